"""
Distributed Tracing with OpenTelemetry.

Traces webhook ingestion, the detached reconciliation that follows it, and
outbound calls to the App Store Server API. Reconciliation runs in its own
task after the response has gone out, so its spans start a new trace unless
one is current when the task is spawned.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span

from app.config import settings

TRACER_NAME = "app.reconciler"


def setup_tracing() -> None:
    """Install a TracerProvider exporting to the OTLP collector, if tracing is enabled."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
                "deployment.environment": settings.apple_environment.lower(),
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """
    Instrument FastAPI application for automatic tracing.

    Must be called after app creation.
    """
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics,v1/status")


def instrument_sqlalchemy(engine: Any) -> None:
    """Instrument the customer store's SQLAlchemy engine for query tracing."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """Add attributes to a span, stringifying non-primitive values and skipping None."""
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            span.set_attribute(key, value)
        else:
            span.set_attribute(key, str(value))


def current_trace_id() -> str | None:
    """Hex id of the active trace, or None outside a recorded span."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None
    return format(context.trace_id, "032x")


@contextmanager
def trace_operation(operation_name: str, **attributes: Any) -> Iterator[Span]:
    """
    Run a block inside a new current span.

    Exceptions escaping the block are recorded on the span and mark it as an
    error before they propagate.

    Usage:
        with trace_operation("apple_api_request", operation="subscription_statuses") as span:
            span.set_attribute("http.status_code", 200)
    """
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(
        operation_name, record_exception=True, set_status_on_exception=True
    ) as span:
        add_span_attributes(span, **attributes)
        yield span
