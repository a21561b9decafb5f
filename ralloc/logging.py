"""Structured logging for the allocation service.

structlog renders JSON in production and coloured console lines in debug
mode. Two layers of context are merged into every entry:

- request context (request id, correlation id, actor), bound by the HTTP
  middleware for the lifetime of one request;
- operation context (operation name, allocation id, resource id, actor),
  bound by the engine around each public operation and restored on exit.

Engine values are logged as they are: enum members become their value and
instants become ISO-8601 strings before rendering.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog
from structlog.typing import EventDict, WrappedLogger

SERVICE_NAME = "ralloc"


def render_domain_values(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Turn enums, instants and durations into JSON-ready scalars."""
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
        elif isinstance(value, datetime):
            event_dict[key] = value.isoformat()
        elif isinstance(value, timedelta):
            event_dict[key] = value.total_seconds()
    return event_dict


def add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(
    json_format: bool = True,
    level: str = "INFO",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the service.

    Args:
        json_format: If True, output JSON logs; otherwise use console format.
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        add_timestamp: Whether to add timestamps to log entries.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_service,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        render_domain_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (usually __name__).
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind request-scoped context included in all subsequent logs."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def operation_context(operation: str, **fields: Any) -> Iterator[None]:
    """Bind ``operation`` and the non-None ``fields`` for the enclosed block.

    Previously bound values (for example the request's actor) are restored
    on exit, so nested operations do not leak into their caller.

    Usage:
        with operation_context("approve", allocation_id=record_id, actor=actor):
            logger.info("allocation_approved")
    """
    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(operation=operation, **bound):
        yield
