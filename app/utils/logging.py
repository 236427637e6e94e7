"""Structured Logging Configuration.

This module configures structlog for JSON output and context binding.
Outputs JSON format for production log aggregation (CloudWatch, Datadog, Splunk).

Configuration:
- JSON output format (for production log aggregation)
- Context binding support (worker ids, task ids, project ids)
- Log levels: DEBUG, INFO, WARNING, ERROR, CRITICAL

Usage:
    from app.utils.logging import configure_logging, get_logger

    configure_logging()  # once, at process start
    log = get_logger(__name__)
    log.info("task_claimed", task_id=str(task.id), worker_id=worker_id)
"""

import logging
import os
import sys

import structlog


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (default: LOG_LEVEL env var, else INFO).
        json_output: Render JSON lines (default: LOG_FORMAT env var != "console").
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "json").lower() != "console"

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    """Get a structured logger bound to the given module name.

    Args:
        name: Module name (typically __name__)

    Returns:
        structlog logger with a "logger" context key.
    """
    return structlog.get_logger(name).bind(logger=name)
