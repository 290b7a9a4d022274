"""Observability for the webhook relay.

This module contains:
- Structured logging configuration (structlog)
- Context binding helpers for request-scoped log fields
"""

from src.observability.logging import (
    bind_context,
    clear_context,
    configure_logging,
    is_configured,
)

__all__ = [
    "bind_context",
    "clear_context",
    "configure_logging",
    "is_configured",
]
