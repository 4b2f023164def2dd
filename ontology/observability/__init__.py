"""
Ontology Observability Module
=============================

Logging setup and learning-cycle context propagation.
"""

from .logging_config import (
    ContextFormatter,
    CycleLogger,
    LogContext,
    StructuredFormatter,
    current_context,
    generate_correlation_id,
    get_correlation_id,
    get_cycle_id,
    get_stage,
    log_exception,
    setup_logging,
    setup_logging_from_settings,
    stage_context,
)

__all__ = [
    "setup_logging",
    "setup_logging_from_settings",
    "LogContext",
    "CycleLogger",
    "stage_context",
    "StructuredFormatter",
    "ContextFormatter",
    "current_context",
    "get_correlation_id",
    "get_cycle_id",
    "get_stage",
    "generate_correlation_id",
    "log_exception",
]
