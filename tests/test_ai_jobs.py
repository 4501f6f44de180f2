"""
File: tests/test_ai_jobs.py
Purpose: Job enqueue and the best-effort post-commit notification.
"""

import json

from incident_engine.ai_jobs import EventHubJobNotifier, JobEnqueuer, NullJobNotifier
from incident_engine.lease import JobLeaseManager
from incident_engine.models import Incident, JobStatus, JOB_TYPE_INCIDENT_SUMMARY

from conftest import NOW


def _incident(db):
    inc = Incident(
        org_id="org-1", project_id="proj-1", environment="prod",
        fingerprint="signup|prod", title="Signup drop detected in prod",
        opened_at=NOW, last_seen_at=NOW,
    )
    with db.session() as s:
        s.add(inc)
    return inc.id


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def publish(self, message, key):
        self.sent.append((message, key))

    def close(self):
        pass


class BrokenNotifier(RecordingNotifier):
    def publish(self, message, key):
        raise ConnectionError("hub unreachable")


def test_enqueue_writes_queued_job_and_notifies(db, clock):
    incident_id = _incident(db)
    notifier = RecordingNotifier()
    enqueuer = JobEnqueuer(db, notifier, clock=clock)

    job_id = enqueuer.enqueue(incident_id)

    job = JobLeaseManager(db, clock=clock).get(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.job_type == JOB_TYPE_INCIDENT_SUMMARY
    assert job.attempt_count == 0
    assert job.max_attempts == 3
    assert job.run_after == NOW

    assert notifier.sent == [(
        {
            "job_id": job_id,
            "incident_id": incident_id,
            "job_type": JOB_TYPE_INCIDENT_SUMMARY,
            "created_at": NOW.isoformat(),
        },
        incident_id,
    )]


def test_notification_failure_does_not_affect_enqueue(db, clock):
    incident_id = _incident(db)
    enqueuer = JobEnqueuer(db, BrokenNotifier(), clock=clock)
    job_id = enqueuer.enqueue(incident_id)
    assert job_id


def test_default_notifier_is_null(db, clock):
    enqueuer = JobEnqueuer(db, clock=clock)
    assert isinstance(enqueuer.notifier, NullJobNotifier)
    assert enqueuer.enqueue(_incident(db))


class FakeBatch:
    def __init__(self, partition_key):
        self.partition_key = partition_key
        self.events = []

    def add(self, event):
        self.events.append(event)


class FakeProducer:
    def __init__(self):
        self.batches = []
        self.closed = False

    def create_batch(self, partition_key=None):
        return FakeBatch(partition_key)

    def send_batch(self, batch):
        self.batches.append(batch)

    def close(self):
        self.closed = True


def test_eventhub_notifier_keys_by_incident():
    producer = FakeProducer()
    notifier = EventHubJobNotifier("", "signals-ai-jobs-v1", producer=producer)
    notifier.publish({"job_id": "j1", "incident_id": "i1"}, key="i1")
    notifier.close()

    assert producer.closed
    [batch] = producer.batches
    assert batch.partition_key == "i1"
    assert json.loads(batch.events[0].body_as_str()) == {"job_id": "j1", "incident_id": "i1"}
