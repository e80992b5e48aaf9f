"""Logging configuration for codecrew."""

import logging
import sys

import structlog

from codecrew.config import get_config


def configure_logging(level: str | None = None) -> None:
    """Configure structured logging for codecrew.

    Args:
        level: Optional level override (e.g. from a ``--verbose`` flag)
    """
    config = get_config()

    level_name = (level or config.logging.level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.logging.format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
