"""
File: instrumentation.py
Purpose: Prometheus metrics collectors used across the engine and the AI worker

Exports:
  - REQUESTS / LATENCY: HTTP request counters and latency (service shell)
  - EVENTS_CONSUMED(outcome): processed | dropped | failed
  - BUCKET_WRITES(metric): atomic bucket increments per metric name
  - RULE_TRIGGERS(rule, severity): anomalies detected
  - INCIDENTS(action): created | updated | resolved | investigating
  - AI_JOBS(outcome): enqueued | acquired | succeeded | retried | failed
  - JOB_NOTIFY_FAILURES: best-effort notifications that could not be published
  - DB_TIME(route) / LLM_TIME: latency histograms
"""

from prometheus_client import Counter, Histogram, CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest

REGISTRY = CollectorRegistry(auto_describe=True)

REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["route", "method", "status"],
    registry=REGISTRY,
)

LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    labelnames=["route"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
    registry=REGISTRY,
)

EVENTS_CONSUMED = Counter(
    "events_consumed_total",
    "Inbound event envelopes by processing outcome",
    labelnames=["outcome"],
    registry=REGISTRY,
)

BUCKET_WRITES = Counter(
    "bucket_writes_total",
    "Atomic metric bucket increments",
    labelnames=["metric"],
    registry=REGISTRY,
)

RULE_TRIGGERS = Counter(
    "rule_triggers_total",
    "Detection rules that fired",
    labelnames=["rule", "severity"],
    registry=REGISTRY,
)

INCIDENTS = Counter(
    "incidents_total",
    "Incident lifecycle transitions",
    labelnames=["action"],
    registry=REGISTRY,
)

AI_JOBS = Counter(
    "ai_jobs_total",
    "AI job state transitions",
    labelnames=["outcome"],
    registry=REGISTRY,
)

JOB_NOTIFY_FAILURES = Counter(
    "job_notifications_failed_total",
    "AI job notifications that could not be published",
    registry=REGISTRY,
)

DB_TIME = Histogram(
    "db_seconds",
    "DB operation durations in seconds",
    labelnames=["route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2),
    registry=REGISTRY,
)

LLM_TIME = Histogram(
    "llm_seconds",
    "Inference provider call durations in seconds",
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 90),
    registry=REGISTRY,
)


def setup_metrics(app):
    """Attach registry to app.state for /metrics endpoint to read."""
    app.state.prom_registry = REGISTRY


def render_metrics():
    """Return (content_type, payload) for a Starlette/FastAPI Response."""
    return CONTENT_TYPE_LATEST, generate_latest(REGISTRY)
