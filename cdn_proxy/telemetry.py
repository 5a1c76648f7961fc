from typing import Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Counter, Info
from prometheus_fastapi_instrumentator import Instrumentator

from cdn_proxy.vars import OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

app_info = Info("cdn_proxy_app", "Application Info")
app_info.info({"app_name": SERVICE_NAME})

UPSTREAM_ERRORS = Counter(
    "cdn_proxy_upstream_errors_total",
    "Proxied requests that failed before a response reached the client",
    ["kind"],
)

_tracer_provider_configured = False


class FilteringSpanExporter(SpanExporter):
    """
    Drop the per-chunk ASGI body spans of streamed responses.
    A single proxied download would otherwise emit one span per chunk.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracer_provider() -> None:
    """Install the process-wide tracer provider once."""
    global _tracer_provider_configured
    if _tracer_provider_configured:
        return
    _tracer_provider_configured = True

    provider = TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=OTLP_HEADERS or None,
        )
        provider.add_span_processor(BatchSpanProcessor(FilteringSpanExporter(otlp_exporter)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Expose Prometheus metrics and trace every request of ``app``."""
    configure_tracer_provider()
    Instrumentator().instrument(app).expose(app)
    FastAPIInstrumentor.instrument_app(app)
