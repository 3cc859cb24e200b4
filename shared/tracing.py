"""Tracing setup for the Access Gateway.

Spans are opened with the plain ``opentelemetry-api`` tracer everywhere; this
module only installs an SDK provider when tracing is enabled in config, so
trace ids appear in logs and error bodies.
"""

from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter


def configure_tracing(service_name: str, otel_exporter: Optional[str] = None, enable_console: bool = False) -> None:
    """Configure OpenTelemetry tracing for a service."""
    resource = Resource.create({
        "service.name": service_name,
        "service.version": "1.0.0",
        "service.namespace": "access-gateway",
    })
    provider = TracerProvider(resource=resource)

    if otel_exporter:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{otel_exporter.rstrip('/')}/v1/traces"))
        )
    if enable_console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)


def get_tracer(name: str) -> trace.Tracer:
    """Return a tracer; a no-op tracer until a provider is configured."""
    return trace.get_tracer(name)
