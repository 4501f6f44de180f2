"""
File: tests/conftest.py
Purpose: Shared fixtures - SQLite file database, controllable clock, event factory.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from incident_engine.db import Database
from incident_engine.events import EventEnvelope
from incident_engine.models import MetricBucket

NOW = datetime(2024, 6, 1, 12, 0, 30, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'engine.db'}")
    database.open()
    database.ensure_schema()
    yield database
    database.close()


@pytest.fixture
def clock():
    return FrozenClock()


def make_event(
    event_type: str = "error",
    occurred_at: datetime = NOW,
    environment: str = "prod",
    project_id: str = "proj-1",
    severity: str = "error",
    **attributes,
) -> EventEnvelope:
    if event_type == "error" and not attributes:
        attributes = {"error_code": "E500", "route": "/checkout"}
    return EventEnvelope(
        event_id=uuid.uuid4(),
        occurred_at=occurred_at,
        received_at=occurred_at,
        org_id="org-1",
        project_id=project_id,
        environment=environment,
        event_type=event_type,
        severity=severity,
        message=f"{event_type} happened",
        attributes=attributes,
    )


@pytest.fixture
def event_factory():
    return make_event


def seed_bucket(db: Database, metric: str, fp: str, bucket_start: datetime, value: int,
                project_id: str = "proj-1", environment: str = "prod") -> None:
    """Write a pre-aggregated bucket directly."""
    with db.session() as s:
        s.add(MetricBucket(
            org_id="org-1",
            project_id=project_id,
            environment=environment,
            metric_name=metric,
            fingerprint=fp,
            bucket_start=bucket_start,
            bucket_seconds=60,
            value=value,
            updated_at=bucket_start,
        ))
