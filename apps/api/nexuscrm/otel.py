from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span

from nexuscrm import __version__
from nexuscrm.context import get_log_context
from nexuscrm.core.config import Settings


_exporters_configured = False
_provider: TracerProvider | None = None


def _tracer_provider(service_name: str) -> TracerProvider:
    """The process-wide provider; the global one can only be installed once."""
    global _provider

    if _provider is None:
        resource = Resource.create({"service.name": service_name, "service.version": __version__})
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings) -> TracerProvider | None:
    global _exporters_configured

    if not settings.otel_enabled:
        return None

    provider = _tracer_provider(settings.service_name)
    if _exporters_configured:
        return provider

    if settings.otel_exporter_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_configured = True
    return provider


def setup_inmemory_otel(service_name: str = "nexus-crm") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


@contextmanager
def traced(tracer_name: str, span_name: str, **attributes: Any) -> Iterator[Span]:
    """Span tagged with the request's correlation and organization ids.

    ``None`` attribute values are skipped since span attributes cannot hold them.
    """
    with trace.get_tracer(tracer_name).start_as_current_span(span_name) as span:
        for key, value in {**get_log_context(), **attributes}.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def server_request_hook(span: Span | None, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers", []))
    correlation_raw = headers.get(b"x-correlation-id")
    if correlation_raw:
        span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))
