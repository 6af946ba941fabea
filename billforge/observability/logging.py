"""
Structured Logging with Structlog.

JSON logs carry the request, user and webhook event they belong to:
request_id is bound by the HTTP middleware, user_id by the bearer-token
dependency, and event_id/event_type by the Stripe webhook route. Credential
fields are masked before rendering.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import UUID

import structlog
from structlog.types import EventDict, Processor

from billforge.config import settings

# Keys whose values must never reach a log sink
SENSITIVE_KEYS = frozenset(
    {
        "password",
        "password_hash",
        "access_token",
        "refresh_token",
        "authorization",
        "cookie",
        "stripe_signature",
        "api_key",
        "secret",
    }
)
REDACTED = "[redacted]"

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("stripe", "sqlalchemy.engine", "uvicorn.access")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    event_dict["environment"] = settings.environment
    return event_dict


def redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask passwords, tokens and signing material, including one level of nesting."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if str(k).lower() in SENSITIVE_KEYS else v for k, v in value.items()
            }
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "subscription_reconciled",
        "level": "info",
        "timestamp": "2026-10-19T12:00:00.123456Z",
        "logger": "billforge.services.reconciler",
        "service": "billforge-api",
        "version": "0.1.0",
        "environment": "production",
        "request_id": "9f0c...",
        "event_id": "evt_123",
        "event_type": "customer.subscription.updated",
        ...additional context
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_credentials,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

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
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("subscription_reconciled", user_id=str(user_id), status="active")
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_user(user_id: UUID) -> None:
    """Attach the authenticated user to every log line of the current request."""
    structlog.contextvars.bind_contextvars(user_id=str(user_id))


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """
    Bind structured logging context for the duration of a block.

    Values bound by an enclosing context are restored on exit, so an
    event context nested inside a request keeps the request_id.

    Usage:
        with log_context(event_id="evt_123", event_type="invoice.paid"):
            logger.info("webhook_event_received")
    """
    tokens = structlog.contextvars.bind_contextvars(**kwargs)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
