"""
File: lease.py
Purpose: Job lease manager - atomic acquisition with a 2-minute lease,
         retry with exponential backoff, crash recovery via lease expiry.

A job is eligible when attempt_count < max_attempts and either
  - status = queued AND run_after <= now AND (leased_until IS NULL OR leased_until <= now), or
  - status = running AND leased_until <= now  (worker presumed dead).
Acquisition is one UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED)
... RETURNING statement with the eligibility predicate repeated on the outer
UPDATE, so two workers can never both win the same row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import aliased

from .db import Database
from .instrumentation import AI_JOBS, DB_TIME
from .models import AIJob, JobStatus, utcnow

log = logging.getLogger("incident-engine.lease")

LEASE_DURATION = timedelta(minutes=2)
BACKOFF_BASE_MS = 5000
BACKOFF_CAP_MS = 120000


def backoff_ms(attempt_count: int) -> int:
    """min(5000 * 2^(attempt_count-1), 120000) milliseconds."""
    exponent = max(attempt_count - 1, 0)
    return min(BACKOFF_BASE_MS * (2 ** exponent), BACKOFF_CAP_MS)


@dataclass(frozen=True)
class LeasedJob:
    """Snapshot of a job as acquired; attempt_count already includes this attempt."""
    id: str
    incident_id: str
    job_type: str
    attempt_count: int
    max_attempts: int
    leased_until: datetime


class JobLeaseManager:
    """Hands each eligible job to exactly one worker at a time."""

    def __init__(
        self,
        db: Database,
        lease_duration: timedelta = LEASE_DURATION,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.lease_duration = lease_duration
        self.clock = clock

    @staticmethod
    def _eligible(job, now: datetime):
        return and_(
            or_(
                and_(
                    job.status == JobStatus.QUEUED,
                    job.run_after <= now,
                    or_(job.leased_until.is_(None), job.leased_until <= now),
                ),
                and_(
                    job.status == JobStatus.RUNNING,
                    job.leased_until <= now,
                ),
            ),
            job.attempt_count < job.max_attempts,
        )

    def acquire(self) -> Optional[LeasedJob]:
        """Lease one eligible job, or return None when nothing is available."""
        now = self.clock()
        # Aliased so the subquery is not correlated to the UPDATE target
        pick = aliased(AIJob)
        candidate = (
            select(pick.id)
            .where(self._eligible(pick, now))
            .order_by(pick.run_after, pick.created_at)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(AIJob)
            .where(AIJob.id == candidate, self._eligible(AIJob, now))
            .values(
                status=JobStatus.RUNNING,
                leased_until=now + self.lease_duration,
                attempt_count=AIJob.attempt_count + 1,
                updated_at=now,
            )
            .returning(
                AIJob.id, AIJob.incident_id, AIJob.job_type,
                AIJob.attempt_count, AIJob.max_attempts, AIJob.leased_until,
            )
            .execution_options(synchronize_session=False)
        )
        with DB_TIME.labels(route="job_acquire").time():
            with self.db.session() as s:
                row = s.execute(stmt).first()

        if row is None:
            return None

        job = LeasedJob(
            id=row.id,
            incident_id=row.incident_id,
            job_type=row.job_type,
            attempt_count=row.attempt_count,
            max_attempts=row.max_attempts,
            leased_until=row.leased_until,
        )
        AI_JOBS.labels(outcome="acquired").inc()
        log.info(
            "acquired job",
            extra={"job_id": job.id, "attempt": job.attempt_count, "max_attempts": job.max_attempts},
        )
        return job

    def complete(self, job_id: str) -> None:
        """status=succeeded, lease cleared."""
        now = self.clock()
        self._update(job_id, route="job_complete", status=JobStatus.SUCCEEDED, leased_until=None, updated_at=now)
        AI_JOBS.labels(outcome="succeeded").inc()
        log.info("job completed", extra={"job_id": job_id})

    def fail(self, job_id: str, error: str, attempt_count: int, max_attempts: int) -> Optional[datetime]:
        """
        Record a failed attempt. Terminal once attempt_count >= max_attempts;
        otherwise requeue with backoff. Returns the new run_after, or None when terminal.
        """
        now = self.clock()
        if attempt_count >= max_attempts:
            self._update(
                job_id, route="job_fail",
                status=JobStatus.FAILED, last_error=error, leased_until=None, updated_at=now,
            )
            AI_JOBS.labels(outcome="failed").inc()
            log.warning("job permanently failed", extra={"job_id": job_id, "err": error})
            return None

        delay = backoff_ms(attempt_count)
        run_after = now + timedelta(milliseconds=delay)
        self._update(
            job_id, route="job_fail",
            status=JobStatus.QUEUED, last_error=error, leased_until=None,
            run_after=run_after, updated_at=now,
        )
        AI_JOBS.labels(outcome="retried").inc()
        log.info("job scheduled for retry", extra={"job_id": job_id, "backoff_ms": delay, "err": error})
        return run_after

    def renew(self, job_id: str) -> datetime:
        """Extend the lease by another lease_duration from now."""
        now = self.clock()
        leased_until = now + self.lease_duration
        self._update(job_id, route="job_renew", leased_until=leased_until, updated_at=now)
        return leased_until

    def get(self, job_id: str) -> Optional[AIJob]:
        with self.db.session() as s:
            return s.get(AIJob, job_id)

    def _update(self, job_id: str, route: str, **values) -> None:
        stmt = (
            update(AIJob)
            .where(AIJob.id == job_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with DB_TIME.labels(route=route).time():
            with self.db.session() as s:
                s.execute(stmt)
