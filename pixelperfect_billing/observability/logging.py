"""
Structured Logging with Structlog.

JSON logs carrying the Stripe event or user being worked on, joined to the
active trace, with provider secrets masked.
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace
from structlog.types import EventDict, Processor

from pixelperfect_billing.config import settings

# Keys whose values must never reach the log stream
SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "authorization",
        "signature",
        "stripe_signature",
        "webhook_secret",
        "x_admin_key",
    }
)
REDACTED = "[redacted]"


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    event_dict["environment"] = settings.environment
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Join log lines to the span they were emitted under."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in event_dict:
        if key.lower().replace("-", "_") in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "webhook_event_claimed",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "pixelperfect_billing.services.idempotency",
        "service": "pixelperfect-billing-api",
        "version": "0.1.0",
        "environment": "production",
        "event_id": "evt_123",
        "event_type": "invoice.paid",
        "trace_id": "4bf92f3577b34da6a3ce929d0e0e4736",
        ...additional context
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        add_trace_context,
        redact_secrets,
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
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

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
        logger.info("credits_added", user_id=str(user_id), amount=100)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind the Stripe event, subscription or user being handled to every log
    line emitted inside the block. None values are skipped and UUIDs are
    rendered as strings.

    Usage:
        with log_context(event_id="evt_123", event_type="invoice.paid"):
            logger.info("webhook_dispatching")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = {
            key: value if isinstance(value, (str, int, float, bool)) else str(value)
            for key, value in kwargs.items()
            if value is not None
        }

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
