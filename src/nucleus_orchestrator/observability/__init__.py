"""Observability public API: structlog configuration and correlation scopes."""

from nucleus_orchestrator.observability.logging import (
    LOG_FORMATS,
    configure_from_config,
    configure_logging,
    correlation_scope,
    get_correlation_context,
    redact_event,
    redact_value,
)

__all__ = [
    "LOG_FORMATS",
    "configure_from_config",
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "redact_event",
    "redact_value",
]
