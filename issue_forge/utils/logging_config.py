"""
Logging configuration using structlog for structured, JSON-based logging.

Sessions run as concurrent asyncio tasks in one process. Each task binds its
``session_id`` and ``repo`` through ``structlog.contextvars`` so interleaved
log lines can be told apart.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging with JSON output.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_session(session_id: int, repo: str) -> None:
    """Bind session identifiers to every log line of the current task.

    ``contextvars`` are copied when a task is created, so binding inside a
    session task does not leak into sibling sessions.
    """
    structlog.contextvars.bind_contextvars(session_id=session_id, repo=repo)


def get_logger(name: str | None = None) -> Any:
    """Get a logger instance.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("phase_started", session_id=42, phase="planning")
    """
    return structlog.get_logger(name)
