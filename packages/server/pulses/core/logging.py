"""Structured logging setup."""

from __future__ import annotations

import structlog

from pulses.core.config import get_settings


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog with the specified level and format.

    Falls back to the ``log_level`` / ``log_format`` settings.
    """
    settings = get_settings()
    level = level or settings.log_level
    fmt = fmt or settings.log_format

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )
