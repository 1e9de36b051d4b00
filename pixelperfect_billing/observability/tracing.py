"""
Distributed Tracing with OpenTelemetry.

Spans cover webhook dispatch, failed-event recovery and plan changes.
Domain attributes are namespaced under "billing." so they sort apart from
the HTTP and database attributes the instrumentors add.
"""

from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from pixelperfect_billing.config import settings

if TYPE_CHECKING:
    from pixelperfect_billing.models.domain import VerifiedWebhook

ATTRIBUTE_PREFIX = "billing."
TRACER_NAME = "pixelperfect_billing.operations"


def setup_tracing() -> None:
    """
    Configure OpenTelemetry tracing with OTLP export.

    Sets up:
    - TracerProvider tagged with service name, version and environment
    - OTLP exporter to collector
    """
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)
    otlp_exporter = OTLPSpanExporter(
        endpoint=settings.otlp_endpoint,
        insecure=settings.otlp_insecure,
    )
    provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """
    Instrument the FastAPI application. Must be called after app creation.

    Health checks and metrics scrapes are excluded so they do not flood the
    trace backend.
    """
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


def instrument_sqlalchemy(engine: Any) -> None:
    """Instrument an async SQLAlchemy engine for query tracing."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def billing_attributes(**attributes: Any) -> dict[str, str | int | float | bool]:
    """
    Namespace domain attributes and coerce them to span-safe values.

    None values are dropped; UUIDs, enums and other objects become strings.
    """
    result: dict[str, str | int | float | bool] = {}
    for key, value in attributes.items():
        if value is None:
            continue
        if hasattr(value, "value") and isinstance(value.value, str):
            value = value.value
        if not isinstance(value, (str, int, float, bool)):
            value = str(value)
        result[f"{ATTRIBUTE_PREFIX}{key}"] = value
    return result


def webhook_attributes(webhook: "VerifiedWebhook") -> dict[str, Any]:
    """Span attributes identifying a Stripe event."""
    return {
        "event_id": webhook.event_id,
        "event_type": webhook.event_type,
        "event_kind": webhook.kind,
        "test_mode": webhook.is_test_mode,
    }


def set_span_error(span: Span, error: BaseException) -> None:
    """Mark span as error and record exception."""
    span.set_status(Status(StatusCode.ERROR, str(error)))
    span.record_exception(error)


class trace_operation:
    """
    Context manager for creating traced billing operations.

    Usage:
        with trace_operation("stripe_webhook_dispatch", **webhook_attributes(webhook)) as span:
            ...
            span.set_attribute("billing.outcome", "completed")
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = billing_attributes(**attributes)
        self.tracer = trace.get_tracer(TRACER_NAME)
        self.span: Span | None = None
        self._scope: Any = None

    def __enter__(self) -> Span:
        self.span = self.tracer.start_span(self.operation_name, attributes=self.attributes)
        self._scope = trace.use_span(self.span, end_on_exit=False)
        self._scope.__enter__()
        return self.span

    def __exit__(self, exc_type: type, exc_val: BaseException, exc_tb: object) -> None:
        if self._scope is not None:
            self._scope.__exit__(None, None, None)
        if self.span:
            if exc_val:
                set_span_error(self.span, exc_val)
            self.span.end()
