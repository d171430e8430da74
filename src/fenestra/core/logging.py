# src/fenestra/core/logging.py
"""Structured logging configuration for Fenestra.

Uses structlog for structured key/value logging.

Architecture:
    This module configures BOTH structlog and stdlib logging to emit
    consistent output (JSON or console). ProcessorFormatter routes stdlib
    log records through structlog's processor chain, so modules using
    logging.getLogger(__name__) produce the same format as modules using
    structlog.get_logger().
"""

import logging
import sys
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

# Third-party loggers that are noisy at DEBUG level.
_NOISY_LOGGERS: tuple[str, ...] = (
    # SQLAlchemy engine/pool chatter
    "sqlalchemy",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    # httpx/httpcore - webhook notifier internals
    "httpx",
    "httpcore",
)


def _remove_internal_fields(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Remove internal structlog fields from output.

    ProcessorFormatter always adds _record and _from_structlog; they are
    bookkeeping and must not reach the rendered line.
    """
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
) -> None:
    """Configure structlog and stdlib logging for Fenestra.

    Args:
        json_output: If True, output JSON. If False, human-readable.
        level: Log level (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper())

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        final_processors: list[Any] = [
            _remove_internal_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final_processors = [
            _remove_internal_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=[*shared_processors, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Caching disabled so tests can reconfigure logging
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        ProcessorFormatter(
            processors=final_processors,
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers = []
    root.addHandler(handler)
    root.setLevel(log_level)

    # Never make noisy loggers less restrictive than the root level
    noisy_level = max(log_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(noisy_level)


def window_context(trigger_id: str, window_start: datetime, **extra: Any) -> AbstractContextManager[None]:
    """Bind a window to every log line emitted inside the block.

    Bound through contextvars, so a unit of work logging with structlog or
    stdlib logging from inside execute() gets trigger_id and window_start
    without being handed a logger. Worker threads each have their own context.

    Example:
        with window_context(trigger.id, window.window_start, attempt=2):
            unit.execute(ctx, start, end, variables)
    """
    return structlog.contextvars.bound_contextvars(trigger_id=trigger_id, window_start=window_start.isoformat(), **extra)
