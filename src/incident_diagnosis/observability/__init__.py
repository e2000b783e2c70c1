"""Structured logging for diagnosis runs."""

from incident_diagnosis.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    configure_logging,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "LoggingHandle",
    "configure_logging",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "setup_logging",
    "shutdown_logging",
]
