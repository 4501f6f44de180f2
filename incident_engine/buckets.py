"""
File: buckets.py
Purpose: One-minute metric bucket aggregation.

Every tracked event increments exactly one bucket with a single
INSERT ... ON CONFLICT DO UPDATE SET value = value + 1 statement, so any
number of consumers and replicas can target the same key concurrently.
Windowed queries are sums over contiguous buckets in [start, end).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select

from .db import Database
from .events import EventEnvelope, align_to_minute, fingerprint, metric_name
from .instrumentation import BUCKET_WRITES, DB_TIME
from .models import BUCKET_SECONDS, MetricBucket, utcnow

log = logging.getLogger("incident-engine.buckets")


class BucketAggregator:
    """Idempotent per-minute counters keyed by (project, environment, metric, fingerprint)."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def record_event(self, event: EventEnvelope) -> Optional[str]:
        """
        Count the event in its minute bucket.
        Returns the metric name written, or None for untracked event types.
        """
        metric = metric_name(event)
        if metric is None:
            return None

        table = MetricBucket.__table__
        stmt = self.db.insert(table).values(
            org_id=event.org_id,
            project_id=event.project_id,
            environment=event.environment,
            metric_name=metric,
            fingerprint=fingerprint(event),
            bucket_start=align_to_minute(event.occurred_at),
            bucket_seconds=BUCKET_SECONDS,
            value=1,
            updated_at=self.clock(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                table.c.project_id,
                table.c.environment,
                table.c.metric_name,
                table.c.fingerprint,
                table.c.bucket_start,
                table.c.bucket_seconds,
            ],
            set_={"value": table.c.value + 1, "updated_at": stmt.excluded.updated_at},
        )
        with DB_TIME.labels(route="bucket_upsert").time():
            with self.db.session() as s:
                s.execute(stmt)
        BUCKET_WRITES.labels(metric=metric).inc()
        return metric

    def sum(
        self,
        project_id: str,
        environment: str,
        metric: str,
        fp: str,
        start: datetime,
        end: datetime,
    ) -> int:
        """Sum of bucket values with bucket_start in [start, end)."""
        q = (
            select(func.coalesce(func.sum(MetricBucket.value), 0))
            .where(
                MetricBucket.project_id == project_id,
                MetricBucket.environment == environment,
                MetricBucket.metric_name == metric,
                MetricBucket.fingerprint == fp,
                MetricBucket.bucket_seconds == BUCKET_SECONDS,
                MetricBucket.bucket_start >= start,
                MetricBucket.bucket_start < end,
            )
        )
        with DB_TIME.labels(route="bucket_sum").time():
            with self.db.session() as s:
                total = s.execute(q).scalar_one()
        return int(total or 0)

    def count_last_n_minutes(
        self,
        project_id: str,
        environment: str,
        metric: str,
        fp: str,
        minutes: int,
        reference_time: Optional[datetime] = None,
    ) -> int:
        """Sum over the trailing `minutes` ending at reference_time (default: now)."""
        now = reference_time or self.clock()
        return self.sum(project_id, environment, metric, fp, now - timedelta(minutes=minutes), now)

    def baseline_average(
        self,
        project_id: str,
        environment: str,
        metric: str,
        fp: str,
        baseline_minutes: int,
        window_minutes: int,
        reference_time: Optional[datetime] = None,
    ) -> float:
        """
        Average value per `window_minutes` window over the `baseline_minutes`
        that end `window_minutes` before reference_time (the current window is excluded).
        """
        now = reference_time or self.clock()
        end = now - timedelta(minutes=window_minutes)
        start = end - timedelta(minutes=baseline_minutes)
        total = self.sum(project_id, environment, metric, fp, start, end)
        windows = baseline_minutes / window_minutes if window_minutes else 0
        return total / windows if windows > 0 else 0.0
