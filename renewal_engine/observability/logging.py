"""
Structured Logging with Structlog.

Every record carries the service identity. Records emitted inside a
`log_context` also carry the client or payment being worked on, so a single
tick's output can be filtered down to one client.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from structlog.types import EventDict, Processor

from renewal_engine.config import settings


def add_service_identity(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def render_domain_values(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Money as plain decimal strings, ids and timestamps as their canonical text."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal | UUID):
            event_dict[key] = str(value)
        elif isinstance(value, datetime):
            event_dict[key] = value.isoformat()
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog on top of stdlib logging.

    LOG_FORMAT=json renders one JSON object per line; anything else uses the
    coloured console renderer.
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_identity,
        render_domain_values,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if level == logging.DEBUG:
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Bind `fields` to every record logged in this task until the block exits.

    Nested blocks restore the outer values on exit, so a per-checkpoint
    context inside a per-client one leaves client_id bound.
    """
    with structlog.contextvars.bound_contextvars(**fields):
        yield
