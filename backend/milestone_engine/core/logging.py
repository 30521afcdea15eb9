"""structlog setup for the milestone engine.

One processor chain serves both structlog loggers and stdlib loggers
(uvicorn, SQLAlchemy, botocore), so every line comes out in the same shape:
JSON in production, ConsoleRenderer when ``debug`` is on. Each entry carries
the service name and, inside a request, the X-Request-ID correlation id.

Money and identifiers are logged as plain strings (``"150.00"``, not
``Decimal('150.00')``) so log queries can match them directly.
"""

import logging
import logging.config
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

import structlog
from asgi_correlation_id.context import correlation_id

SERVICE_NAME = "milestone-engine"

QUIET_LOGGERS = ("uvicorn.access", "httpx", "sqlalchemy.engine", "botocore", "aiosqlite")


def add_service_context(logger, method, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def stringify_domain_values(logger, method, event_dict):
    """Render Decimal, UUID, datetime and enum values as strings."""
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
        elif isinstance(value, (Decimal, uuid.UUID)):
            event_dict[key] = str(value)
        elif isinstance(value, datetime):
            event_dict[key] = value.isoformat()
    return event_dict


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the processor chain. Must run before the first logger is used.

    Args:
        log_level: root level for stdlib and structlog loggers
        json_logs: JSONRenderer when True, ConsoleRenderer otherwise
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        stringify_domain_values,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    })

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
