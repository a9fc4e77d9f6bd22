from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

DEFAULT_SERVICE_NAME = "crm-insights-api"

_exporters_configured = False
_provider: TracerProvider | None = None


def _tracer_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": os.getenv("APP_VERSION", "0.1.0"),
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str = DEFAULT_SERVICE_NAME, enable: bool = True) -> TracerProvider | None:
    global _exporters_configured

    if not enable:
        return None

    provider = _tracer_provider(service_name)
    if _exporters_configured:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_configured = True
    return provider


def setup_inmemory_otel(service_name: str = DEFAULT_SERVICE_NAME) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def _server_request_hook(span: Any, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers", []))
    correlation_raw = headers.get(b"x-correlation-id")
    if correlation_raw:
        span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))


def instrument_app(app: FastAPI) -> None:
    if getattr(app, "_is_instrumented_by_opentelemetry", False):
        return
    FastAPIInstrumentor().instrument_app(app, server_request_hook=_server_request_hook)
