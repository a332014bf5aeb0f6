"""
Structured logging configuration using structlog.

Provides single-line JSON logs in production (consumed by the log aggregator)
and human-readable colored output for development.

Usage:
    from course_sync.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.error("courses_sync_error", error_kind="NetworkError", message="timeout")

Output in production (JSON):
    {"event": "courses_sync_error", "error_kind": "NetworkError", "message": "timeout",
     "timestamp": "2024-01-01T12:00:00Z", "level": "error", "logger": "course_sync.core.error_tracker"}
"""

import logging
import sys
from typing import Any

import structlog

from course_sync.core.config import settings

IS_PRODUCTION = settings.is_production
IS_TEST = "pytest" in sys.modules


def configure_logging() -> None:
    """Configure structlog with appropriate processors for the environment."""

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
    ]

    if IS_PRODUCTION:
        # Production: JSON output for log aggregation
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # Development: colored, human-readable output
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=not IS_TEST),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        # Cached loggers would bypass structlog.testing.capture_logs
        cache_logger_on_first_use=not IS_TEST,
    )

    # Also configure standard logging for plumbing modules and third-party libraries
    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
        level=logging.INFO,
    )

    # Reduce noise from chatty libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        A structlog bound logger with JSON/console output based on environment
    """
    return structlog.get_logger(name)


# Configure on import
configure_logging()
