"""
Logging configuration using structlog for structured, JSON-based logging.

This module provides centralized logging setup for the engine and CLI, with
support for contextual logging: the execution engine binds ``plan_id``
through ``structlog.contextvars`` for the duration of a run, so every event
logged while a plan executes carries it.
"""

import sys
from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Sets up structlog with a pipeline of processors for rich, structured logs
    that include timestamps, log levels, stack traces, and contextual information.
    Logs go to stderr so that command output on stdout stays machine-readable.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines; otherwise a human-friendly console format
    """
    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        # Resolve the output stream per logger so redirected stderr is honoured
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a logger instance.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("step_succeeded", plan_id="p1", step_id="s1")
    """
    return structlog.get_logger(name)
