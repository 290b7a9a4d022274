"""Structured logging configuration.

Provides JSON-formatted structured logging using structlog.
Supports both development (colored console) and production (JSON) modes.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, TextIO

import structlog

if TYPE_CHECKING:
    from structlog.typing import Processor

# Track if logging has been configured
_configured = False


def configure_logging(
    level: str = "INFO",
    format: str = "json",
    stream: TextIO | None = None,
) -> None:
    """Configure structured logging for the webhook relay.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format: Output format - "json" for production, "text" for development.
        stream: Output stream (stdout if not provided).
    """
    global _configured

    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stdout,
        level=log_level,
    )
    # httpx logs every request at INFO; delivery outcomes are logged by the worker
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if format.lower() == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=(stream or sys.stdout).isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def is_configured() -> bool:
    """Return True once configure_logging has run."""
    return _configured


def bind_context(**kwargs: object) -> None:
    """Bind context variables to all subsequent log messages.

    Args:
        **kwargs: Key-value pairs to bind to the logging context.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
