"""
File: ai_jobs.py
Purpose: Enqueue one AI summarization job per newly created incident and
         publish an advisory wake-up notification after the row is durable.

The notification is a best-effort post-commit hook: it is keyed by incident id,
may be lost, and its failure is logged without touching the enqueue result.
Workers poll the table on a timer, so a lost notification only delays a job.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

from azure.eventhub import EventData, EventHubProducerClient

from .db import Database
from .instrumentation import AI_JOBS, DB_TIME, JOB_NOTIFY_FAILURES
from .models import AIJob, DEFAULT_MAX_ATTEMPTS, JOB_TYPE_INCIDENT_SUMMARY, JobStatus, utcnow

log = logging.getLogger("incident-engine.ai_jobs")


class JobNotifier(Protocol):
    """Publishes job-creation notifications."""

    def publish(self, message: Dict[str, Any], key: str) -> None:
        ...

    def close(self) -> None:
        ...


class NullJobNotifier:
    """Used when no notification hub is configured; workers rely on polling."""

    def publish(self, message: Dict[str, Any], key: str) -> None:
        log.debug("job notification skipped (no hub configured)", extra={"key": key})

    def close(self) -> None:
        pass


class EventHubJobNotifier:
    """Sends notifications to the ai-jobs Event Hub, partitioned by incident id."""

    def __init__(self, conn_str: str, hub: str, producer: Optional[EventHubProducerClient] = None):
        self.hub = hub
        self._producer = producer or EventHubProducerClient.from_connection_string(
            conn_str=conn_str,
            eventhub_name=hub,
            logging_enable=False,
        )
        self._lock = threading.Lock()

    def publish(self, message: Dict[str, Any], key: str) -> None:
        with self._lock:
            batch = self._producer.create_batch(partition_key=key)
            batch.add(EventData(json.dumps(message, default=str)))
            self._producer.send_batch(batch)

    def close(self) -> None:
        self._producer.close()


class JobEnqueuer:
    """Creates ai_jobs rows and fires the post-commit notification hook."""

    def __init__(
        self,
        db: Database,
        notifier: Optional[JobNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.notifier = notifier or NullJobNotifier()
        self.clock = clock

    def enqueue(self, incident_id: str, job_type: str = JOB_TYPE_INCIDENT_SUMMARY) -> str:
        """Insert a queued job for the incident and return its id."""
        now = self.clock()
        job = AIJob(
            incident_id=incident_id,
            job_type=job_type,
            status=JobStatus.QUEUED,
            attempt_count=0,
            max_attempts=DEFAULT_MAX_ATTEMPTS,
            run_after=now,
            created_at=now,
            updated_at=now,
        )
        with DB_TIME.labels(route="job_enqueue").time():
            with self.db.session() as s:
                s.add(job)
        AI_JOBS.labels(outcome="enqueued").inc()
        log.info("enqueued AI job", extra={"job_id": job.id, "incident_id": incident_id})

        self._after_commit(job)
        return job.id

    def _after_commit(self, job: AIJob) -> bool:
        """Best-effort notification; returns False (and logs) when publishing fails."""
        message = {
            "job_id": job.id,
            "incident_id": job.incident_id,
            "job_type": job.job_type,
            "created_at": job.created_at.isoformat(),
        }
        try:
            self.notifier.publish(message, key=job.incident_id)
            return True
        except Exception as e:
            JOB_NOTIFY_FAILURES.inc()
            log.warning("failed to publish AI job notification", extra={"job_id": job.id, "err": str(e)})
            return False
