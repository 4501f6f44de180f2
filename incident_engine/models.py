"""
SQLAlchemy models for the incident engine.

Tables:
- metrics_buckets: one-minute counters per (project, environment, metric, fingerprint)
- incidents: open/investigating/resolved incidents keyed by fingerprint while open
- incident_events: append-only links between events and incidents
- ai_jobs: summarization job queue with leasing
- ai_outputs: stored AI summaries

Timestamps are timezone-aware UTC everywhere. SQLite (local runs and tests)
drops tzinfo on read, so columns use UTCDateTime to put it back.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import (
    BigInteger, DateTime, Index, Integer, JSON, String, Text,
    ForeignKey, TypeDecorator, UniqueConstraint, text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

BUCKET_SECONDS = 60

# JSONB on Postgres, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")
# BIGSERIAL on Postgres; SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """DateTime(timezone=True) that always round-trips as aware UTC."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# Enums
# =============================================================================

class IncidentStatus:
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"


class IncidentSeverity:
    """Incident severities; only ever raised while an incident is open."""
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"

    RANK = {WARN: 0, ERROR: 1, CRITICAL: 2}

    @classmethod
    def outranks(cls, candidate: str, current: str) -> bool:
        return cls.RANK.get(candidate, 0) > cls.RANK.get(current, 0)


class JobStatus:
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MetricName:
    ERROR_COUNT = "error_count"
    SIGNUP_COUNT = "signup_count"


JOB_TYPE_INCIDENT_SUMMARY = "incident_summary"
OUTPUT_TYPE_SUMMARY = "summary"
DEFAULT_MAX_ATTEMPTS = 3


# =============================================================================
# Core Tables
# =============================================================================

class MetricBucket(Base):
    """One-minute aggregation counter. Created on first write, never decremented."""
    __tablename__ = "metrics_buckets"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(String(128), nullable=False)
    project_id: Mapped[str] = mapped_column(String(128), nullable=False)
    environment: Mapped[str] = mapped_column(String(32), nullable=False)
    metric_name: Mapped[str] = mapped_column(String(64), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(512), nullable=False)
    bucket_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    bucket_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=BUCKET_SECONDS)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "project_id", "environment", "metric_name", "fingerprint",
            "bucket_start", "bucket_seconds",
            name="unique_bucket",
        ),
        Index(
            "idx_buckets_range",
            "project_id", "environment", "metric_name", "fingerprint", "bucket_start",
        ),
    )


class Incident(Base):
    """
    Anomaly grouped by fingerprint. At most one row per
    (project, environment, fingerprint) may be open at a time.
    """
    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(128), nullable=False)
    project_id: Mapped[str] = mapped_column(String(128), nullable=False)
    environment: Mapped[str] = mapped_column(String(32), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=IncidentStatus.OPEN)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default=IncidentSeverity.WARN)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    opened_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    __table_args__ = (
        Index("idx_incidents_lookup", "project_id", "environment", "fingerprint", "status"),
        Index("idx_incidents_last_seen", "status", "last_seen_at"),
        # Closes the create race between replicas: a second open row for the
        # same fingerprint fails to insert and the writer falls back to update.
        Index(
            "uq_incidents_open_fingerprint",
            "project_id", "environment", "fingerprint",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
    )


class IncidentEvent(Base):
    """Append-only record of an event observed within an incident."""
    __tablename__ = "incident_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    incident_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("incidents.id"), nullable=False, index=True
    )
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    attributes: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType)


class AIJob(Base):
    """Summarization job: queued -> running -> succeeded | failed (or back to queued)."""
    __tablename__ = "ai_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    incident_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("incidents.id"), nullable=False, index=True
    )
    job_type: Mapped[str] = mapped_column(String(64), nullable=False, default=JOB_TYPE_INCIDENT_SUMMARY)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JobStatus.QUEUED)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)
    run_after: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    leased_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_ai_jobs_pending", "status", "run_after", "leased_until"),
    )


class AIOutput(Base):
    """Immutable AI summary; the most recent one per incident wins for display."""
    __tablename__ = "ai_outputs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    incident_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("incidents.id"), nullable=False, index=True
    )
    output_type: Mapped[str] = mapped_column(String(32), nullable=False, default=OUTPUT_TYPE_SUMMARY)
    model: Mapped[str] = mapped_column(String(256), nullable=False)
    content: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
