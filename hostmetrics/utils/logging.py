"""
Structured logging for the host analytics service.

structlog is configured once at startup. Request handlers bind a request ID
into the context variables, and every engine module logs snake_case events
with keyword fields through structlog.get_logger(__name__).
"""

import logging
import sys
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

from hostmetrics.config import Settings, get_settings

# Client libraries that log every RPC at INFO
NOISY_LOGGERS = ("google", "grpc", "urllib3", "asyncio")


def add_severity(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Cloud Logging reads the level from `severity`."""
    event_dict["severity"] = method_name.upper()
    return event_dict


def render_values(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Money and dates are logged as plain strings, never as reprs."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
        elif isinstance(value, (datetime, date)):
            event_dict[key] = value.isoformat()
    return event_dict


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the standard library root logger.

    JSON lines in production, console output in dev mode or when
    LOG_FORMAT is not "json".
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if settings.log_format == "json" and not settings.dev_mode:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=not settings.testing)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_severity,
            render_values,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_request_context(request_id: str, **kwargs: Any) -> None:
    """
    Start a fresh logging context for one HTTP request.

    Args:
        request_id: Caller-supplied or generated request ID
        **kwargs: Extra fields merged into every log line of the request
    """
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **kwargs)
