"""
Structured Logging with Structlog.

JSON logs (console renderer for development) with the request id bound per
request. Credentials never reach the log stream: password and token fields
are masked by a processor.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from chatbot.config import settings

REDACTED = "[redacted]"
SENSITIVE_KEYS = frozenset(
    {"password", "new_password", "password_hash", "access_token", "authorization", "api_key"}
)

# Outbound HTTP clients log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "stripe")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_sensitive(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger.

    A JSON entry looks like:
    {
        "event": "credit_deducted",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "chatbot.services.credit_ledger",
        "service": "chatbot-api",
        "version": "0.1.0",
        "request_id": "0b6f...",
        "user_id": "...",
        "credits": 19
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind keyword context to every log entry inside the block.

    Usage:
        with log_context(request_id=request_id):
            logger.info("request_started")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
