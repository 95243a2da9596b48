"""
Structured logging configuration using structlog.

Provides JSON output in production, pretty console output in development.
Logs go to stdout; the process manager handles persistence.
"""

import logging
import sys

import structlog

from wisdom.config import ClientSettings, Settings, settings as default_settings


def setup_logging(settings: Settings | ClientSettings | None = None) -> None:
    """
    Configure structlog and stdlib logging integration.

    Call this once at process startup. Accepts either the server or the
    client settings; both carry ``log_level`` and ``log_format``.
    """
    settings = settings or default_settings
    level = getattr(logging, settings.log_level.upper())

    if settings.log_format == "json":
        # Production: JSON lines for log aggregation
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Configure stdlib logging for third-party libraries (APScheduler, asyncio)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    logging.getLogger("apscheduler").setLevel(logging.INFO)


def get_logger(name: str | None = None):
    """
    Get a structlog logger instance.

    Args:
        name: Optional logger name for context

    Returns:
        Configured structlog logger
    """
    # Initial values keep the proxy lazy, so setup_logging() still applies
    # to loggers created at import time
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()
