"""
Ontology Resilience Module
==========================

Error taxonomy and error handling helpers.
"""

from .error_handler import (
    AlreadyRunningError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    OntologyError,
    error_code_of,
    handle_errors,
)

__all__ = [
    "ErrorCode",
    "OntologyError",
    "NotFoundError",
    "InvalidStateError",
    "AlreadyRunningError",
    "error_code_of",
    "handle_errors",
]
