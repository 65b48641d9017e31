"""OpenTelemetry wiring.

With tracing disabled no provider is installed and `tracer` falls back to the
API's no-op implementation, so spans in service code cost nothing in tests.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from dealpay.common.config import CommonSettings


tracer = trace.get_tracer("dealpay.payments")


def setup_tracing(config: CommonSettings) -> None:
    """Install an OTLP/HTTP exporting tracer provider when tracing is on."""

    if not config.tracing_enabled:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": config.service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI, config: CommonSettings) -> None:
    """Request spans for every route except probes and scrapes."""

    if config.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
