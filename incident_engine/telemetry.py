"""
File: telemetry.py
Purpose: OpenTelemetry tracer provider + FastAPI / httpx auto-instrumentation.

Spans give the JSON logs a real otelTraceId (see logging_setup.TraceIdFilter).
OTEL_EXPORTER=console prints finished spans; "none" keeps spans in-process only.
"""

import logging

from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

log = logging.getLogger("incident-engine.telemetry")

_provider = None


def setup_tracing(service_name: str, exporter: str = "none") -> None:
    """Install the global tracer provider once per process."""
    global _provider
    if _provider is not None:
        return
    _provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if exporter == "console":
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(_provider)
    HTTPXClientInstrumentor().instrument()
    log.info("tracing configured", extra={"exporter": exporter})


def instrument_app(app) -> None:
    FastAPIInstrumentor.instrument_app(app)


def get_tracer(name: str):
    return trace.get_tracer(name)
