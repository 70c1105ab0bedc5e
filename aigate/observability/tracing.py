"""
AIGate - OpenTelemetry Tracing

Spans around gated operations and provider calls.

Usage:
    from aigate.observability.tracing import setup_tracing, trace_operation

    setup_tracing(service_name="aigate")

    with trace_operation("quiz-mcq", "premium", request_id) as span:
        span.set_attribute("aigate.credits", 1)
"""

import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.trace import SpanKind, Status, StatusCode

# Optional OTLP exporter (requires opentelemetry-exporter-otlp)
try:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    OTLP_AVAILABLE = True
except ImportError:
    OTLP_AVAILABLE = False


class TracingManager:
    """Owns the tracer provider and hands out the gate tracer."""

    def __init__(
        self,
        service_name: str = "aigate",
        service_version: str = "1.0.0",
        otlp_endpoint: Optional[str] = None,
        console_export: bool = False,
    ):
        self.service_name = service_name
        self.service_version = service_version

        resource = Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
            "deployment.environment": os.getenv("MODE", "prod"),
        })

        self.provider = TracerProvider(resource=resource)

        if otlp_endpoint and OTLP_AVAILABLE:
            self.provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
            )

        if console_export:
            self.provider.add_span_processor(
                SimpleSpanProcessor(ConsoleSpanExporter())
            )

        self.tracer = self.provider.get_tracer(service_name, service_version)

    def get_tracer(self) -> trace.Tracer:
        return self.tracer

    def start_span(
        self,
        name: str,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Optional[Dict[str, Any]] = None,
    ):
        """Start a span as the current span; returns a context manager."""
        return self.tracer.start_as_current_span(
            name,
            kind=kind,
            attributes={k: v for k, v in (attributes or {}).items() if v is not None},
        )

    def shutdown(self):
        self.provider.shutdown()


# Module-level functions for convenience
_tracing_instance: Optional[TracingManager] = None


def setup_tracing(
    service_name: str = "aigate",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
) -> TracingManager:
    """
    Setup tracing.

    Reads OTLP_ENDPOINT and OTEL_CONSOLE_EXPORT when arguments are omitted.
    """
    global _tracing_instance

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("OTLP_ENDPOINT")

    if os.getenv("OTEL_CONSOLE_EXPORT", "").lower() == "true":
        console_export = True

    _tracing_instance = TracingManager(
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint,
        console_export=console_export,
    )
    return _tracing_instance


def get_tracing_manager() -> TracingManager:
    global _tracing_instance
    if _tracing_instance is None:
        _tracing_instance = TracingManager()
    return _tracing_instance


def get_tracer() -> trace.Tracer:
    return get_tracing_manager().get_tracer()


@contextmanager
def trace_operation(operation: str, tier: str, request_id: str):
    """
    Span covering one Service.execute call.

    Exceptions escaping the block are recorded on the span and re-raised.
    """
    with get_tracing_manager().start_span(
        f"aigate.{operation}",
        attributes={
            "aigate.operation": operation,
            "aigate.tier": tier,
            "aigate.request_id": request_id,
        },
    ) as span:
        try:
            yield span
        except BaseException as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


@contextmanager
def trace_provider_call(provider: str, model: str, operation: str = "chat"):
    """Client span around a provider API call."""
    with get_tracing_manager().start_span(
        f"{provider}.{operation}",
        kind=SpanKind.CLIENT,
        attributes={
            "ai.provider": provider,
            "ai.model": model,
            "ai.operation": operation,
        },
    ) as span:
        yield span
