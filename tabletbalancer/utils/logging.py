"""
Structured logging for the balancer.

Events are structlog key-value records rendered as JSON (default) or for a
console. The run loop binds the current run ID into context variables so
every event logged during a run, in any module, carries it.
"""

import logging
import sys
from typing import Any, List

import structlog
from structlog.types import EventDict, Processor

APP_NAME = "tabletbalancer"


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("app", APP_NAME)
    return event_dict


def _renderer(log_format: str) -> Processor:
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    if log_format == "json":
        return structlog.processors.JSONRenderer(sort_keys=True)
    raise ValueError(f"unknown log format: {log_format}")


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_output: str = "stdout",
) -> None:
    """
    Configure structlog on top of the standard logging module.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        log_format: json or console
        log_output: stdout or stderr
    """
    stream = sys.stderr if log_output == "stderr" else sys.stdout
    level = logging.getLevelName(log_level.upper())

    logging.basicConfig(format="%(message)s", stream=stream, level=level, force=True)

    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        _renderer(log_format),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_run_context(run_id: int) -> None:
    """Tag subsequent events in this task with a balancer run ID."""
    structlog.contextvars.bind_contextvars(run_id=run_id)


def clear_run_context() -> None:
    structlog.contextvars.unbind_contextvars("run_id")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a logger.

    Args:
        name: Logger name, usually __name__

    Returns:
        structlog logger
    """
    return structlog.get_logger(name)
