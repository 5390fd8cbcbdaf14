"""
Logging configuration using structlog for structured, JSON-based logging.

Every job runs inside its own asyncio task, so per-job context (repository,
issue number) is bound through ``structlog.contextvars`` and appears on
every log line emitted while that job is being processed.
"""

from typing import Any

import structlog
from structlog.contextvars import bound_contextvars


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines; when False, use the console renderer
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
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def job_log_context(repo: str, number: int) -> Any:
    """Bind job identity to every log line inside the returned context.

    Example:
        >>> with job_log_context("acme/widgets", 42):
        ...     log.info("phase_started", phase="setup")
    """
    return bound_contextvars(repo=repo, issue=number)
