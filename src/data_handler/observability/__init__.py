"""Observability exports: JSON-lines structlog setup and correlation scopes."""

from data_handler.observability.logging import (
    DEFAULT_LOGGER_NAME,
    configure_structlog,
    correlation_scope,
    get_correlation_context,
)

__all__ = [
    "DEFAULT_LOGGER_NAME",
    "configure_structlog",
    "correlation_scope",
    "get_correlation_context",
]
