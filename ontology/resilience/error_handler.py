"""Error Handler - Error taxonomy for the ontology engine.

Component operations return result objects for expected business
conditions; these exceptions are raised inside the store and helpers and
converted to results at the operation boundary.
"""

import enum
import functools


class ErrorCode(str, enum.Enum):
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    ALREADY_RUNNING = "already_running"
    INTERNAL = "internal"


class OntologyError(Exception):
    """Base exception for the ontology engine."""

    code = ErrorCode.INTERNAL

    def __init__(self, message: str, code: ErrorCode | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class NotFoundError(OntologyError):
    """Document, level record, pattern or conflict is missing."""

    code = ErrorCode.NOT_FOUND


class InvalidStateError(OntologyError):
    """Operation is not allowed from the entity's current state."""

    code = ErrorCode.INVALID_STATE


class AlreadyRunningError(OntologyError):
    """A learning cycle is already in progress."""

    code = ErrorCode.ALREADY_RUNNING


def error_code_of(error: Exception) -> ErrorCode:
    """Map any exception onto the taxonomy."""
    if isinstance(error, OntologyError):
        return error.code
    return ErrorCode.INTERNAL


def handle_errors(error_class=OntologyError, logger=None):
    """Decorator that re-wraps unexpected exceptions as ``error_class``.

    Exceptions that are already part of the taxonomy pass through untouched.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except OntologyError:
                raise
            except Exception as e:
                if logger:
                    logger.error(f"Error in {func.__name__}: {e}")
                raise error_class(str(e)) from e

        return wrapper

    return decorator
