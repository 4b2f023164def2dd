"""
Ontology Engine - Logging Configuration
========================================

Structured JSON or human-readable logging. Every record emitted while a
learning cycle runs carries the cycle ID and the current stage, taken
from context variables, so one cycle can be followed through the logs
of all components.

Usage:
    from ontology.observability import setup_logging, CycleLogger, stage_context

    setup_logging(level="INFO", json_format=True)
    logger = logging.getLogger(__name__)

    with CycleLogger(logger, "cycle-1"):
        with stage_context("promote"):
            logger.info("Promoted doc-1")
"""

import contextvars
import json
import logging
import sys
import traceback as tb
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any
from uuid import uuid4

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("correlation_id", default=None)
_cycle_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("cycle_id", default=None)
_stage: contextvars.ContextVar[str | None] = contextvars.ContextVar("stage", default=None)
_extra_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("extra_context", default={})

DEFAULT_LOG_FILE = "./logs/ontology.log"


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def get_cycle_id() -> str | None:
    return _cycle_id.get()


def get_stage() -> str | None:
    return _stage.get()


def generate_correlation_id() -> str:
    return f"corr-{uuid4().hex[:12]}"


def current_context() -> dict[str, Any]:
    """IDs and extra fields bound to the current context, skipping unset ones."""
    context = {
        "correlation_id": get_correlation_id(),
        "cycle_id": get_cycle_id(),
        "stage": get_stage(),
    }
    context = {key: value for key, value in context.items() if value}
    if extra := _extra_context.get():
        context["context"] = extra
    return context


class LogContext:
    """
    Bind tracing IDs for the duration of a ``with`` block.

    Unset arguments leave the outer value in place; leaving the block
    restores whatever was bound before.
    """

    def __init__(
        self,
        correlation_id: str | None = None,
        cycle_id: str | None = None,
        stage: str | None = None,
        new_correlation: bool = False,
        **extra_context,
    ):
        if new_correlation and correlation_id is None:
            correlation_id = generate_correlation_id()
        self._values = [(_correlation_id, correlation_id), (_cycle_id, cycle_id), (_stage, stage)]
        self.extra_context = extra_context
        self._tokens: list[contextvars.Token] = []

    @property
    def correlation_id(self) -> str | None:
        return self._values[0][1] or get_correlation_id()

    def __enter__(self):
        for var, value in self._values:
            if value:
                self._tokens.append(var.set(value))
        if self.extra_context:
            self._tokens.append(_extra_context.set({**_extra_context.get(), **self.extra_context}))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            token = self._tokens.pop()
            token.var.reset(token)
        return False


@contextmanager
def stage_context(stage: str) -> Generator[None, None, None]:
    """Tag records with the learning-cycle stage currently running."""
    with LogContext(stage=stage):
        yield


# =============================================================================
# FORMATTERS
# =============================================================================


def _exception_info(exc_info) -> dict[str, Any] | None:
    exc_type, exc_value, exc_tb = exc_info
    if exc_type is None:
        return None
    return {
        "type": exc_type.__name__,
        "message": str(exc_value),
        "traceback": tb.format_exception(exc_type, exc_value, exc_tb),
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, include_location: bool = True, extra_fields: dict[str, Any] | None = None):
        super().__init__()
        self.include_location = include_location
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(current_context())

        if self.include_location:
            entry["location"] = {"file": record.filename, "line": record.lineno, "function": record.funcName}
        if record.exc_info and (exception := _exception_info(record.exc_info)):
            entry["exception"] = exception
        if data := getattr(record, "extra_data", None):
            entry["data"] = data

        entry.update(self.extra_fields)
        return json.dumps(entry, default=str)


class ContextFormatter(logging.Formatter):
    """Human-readable formatter prefixing ``[cycle/stage]`` when a cycle is running."""

    DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s %(context)s%(name)s - %(message)s"

    def __init__(self, fmt: str | None = None, datefmt: str | None = None):
        super().__init__(fmt=fmt or self.DEFAULT_FORMAT, datefmt=datefmt or "%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        trace = "/".join(part for part in (get_cycle_id(), get_stage()) if part)
        record.context = f"[{trace}] " if trace else ""
        return super().format(record)


# =============================================================================
# SETUP
# =============================================================================


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_to_console: bool = True,
    log_file_path: str | None = None,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
) -> None:
    """Replace the root handlers with console and/or rotating-file output."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    formatter = StructuredFormatter() if json_format else ContextFormatter()
    handlers: list[logging.Handler] = []

    if log_to_console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_file_path:
        path = Path(log_file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(path, maxBytes=max_file_size_mb * 1024 * 1024, backupCount=backup_count)
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    # SQL echo is controlled by DB_ECHO, not the log level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def setup_logging_from_settings(settings=None) -> None:
    """Configure logging from ``ontology.config.Settings``."""
    if settings is None:
        from ..config import get_settings
        settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file_path=settings.LOG_FILE)


# =============================================================================
# CYCLE LOGGING
# =============================================================================


class CycleLogger:
    """
    Log the start and end of a learning cycle and bind its ID.

    The cycle body catches its own stage failures, so a failed cycle is
    reported through ``mark_failed`` rather than an escaping exception.
    """

    def __init__(self, logger: logging.Logger, cycle_id: str):
        self.logger = logger
        self.cycle_id = cycle_id
        self.error: str | None = None
        self._started: datetime | None = None
        self._context = LogContext(cycle_id=cycle_id)

    def mark_failed(self, error: str) -> None:
        self.error = error

    @property
    def duration_ms(self) -> int:
        if self._started is None:
            return 0
        return int((datetime.now(timezone.utc) - self._started).total_seconds() * 1000)

    def __enter__(self):
        self._started = datetime.now(timezone.utc)
        self._context.__enter__()
        self.logger.info(f"Learning cycle {self.cycle_id} started", extra={"extra_data": {"event": "cycle_start"}})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        data = {"duration_ms": self.duration_ms}
        if exc_type is not None:
            self.logger.error(
                f"Learning cycle {self.cycle_id} raised: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb),
                extra={"extra_data": {"event": "cycle_failed", **data}},
            )
        elif self.error:
            self.logger.error(
                f"Learning cycle {self.cycle_id} aborted: {self.error}",
                extra={"extra_data": {"event": "cycle_aborted", "error": self.error, **data}},
            )
        else:
            self.logger.info(
                f"Learning cycle {self.cycle_id} completed in {data['duration_ms']}ms",
                extra={"extra_data": {"event": "cycle_complete", **data}},
            )
        self._context.__exit__(exc_type, exc_val, exc_tb)
        return False


def log_exception(
    logger: logging.Logger,
    message: str,
    exception: BaseException,
    level: int = logging.ERROR,
    **data,
) -> None:
    """Log ``exception`` with its traceback and ``data`` as structured fields."""
    logger.log(
        level,
        f"{message}: {exception}",
        exc_info=(type(exception), exception, exception.__traceback__),
        extra={"extra_data": data} if data else None,
    )
