"""
File: logging_setup.py
Purpose: Configure structured JSON logging with OpenTelemetry trace context.
"""

import logging

from opentelemetry import trace
from pythonjsonlogger import jsonlogger

# Quiet noisy SDK logs unless overridden
SDK_LOGGERS = (
    "uamqp",
    "azure",
    "azure.eventhub",
    "azure.core.pipeline.policies.http_logging_policy",
    "httpx",
    "apscheduler",
)


class TraceIdFilter(logging.Filter):
    """Inject OpenTelemetry trace_id into log records."""
    def filter(self, record):
        span = trace.get_current_span()
        ctx = span.get_span_context()
        record.otelTraceId = format(ctx.trace_id, '032x') if ctx.is_valid else "0"
        record.otelSpanId = format(ctx.span_id, '016x') if ctx.is_valid else "0"
        return True


def configure_logging(level: str = "INFO", sdk_level: str = "WARNING") -> None:
    """Configure root logger for JSON output with trace context."""
    logger = logging.getLogger()
    logger.setLevel(level)
    handler = logging.StreamHandler()
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s %(otelTraceId)s %(otelSpanId)s"
    )
    handler.setFormatter(formatter)
    handler.addFilter(TraceIdFilter())
    logger.handlers = [handler]

    sdk = getattr(logging, sdk_level.upper(), logging.WARNING)
    for name in SDK_LOGGERS:
        logging.getLogger(name).setLevel(sdk)
