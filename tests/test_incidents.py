"""
File: tests/test_incidents.py
Purpose: Incident dedup, severity monotonicity, event links, operator actions.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from incident_engine.incidents import IncidentLifecycleManager
from incident_engine.models import Incident, IncidentEvent, IncidentSeverity, IncidentStatus
from incident_engine.rules import RuleResult, RuleType

from conftest import NOW, make_event

FP = "E500|/checkout|prod"


def spike(severity=IncidentSeverity.ERROR, fp=FP):
    return RuleResult(
        triggered=True,
        rule_type=RuleType.ERROR_SPIKE,
        fingerprint=fp,
        current_count=30,
        baseline=0.0,
        severity=severity,
        title="Error spike: E500 on /checkout",
    )


@pytest.fixture
def manager(db, clock):
    return IncidentLifecycleManager(db, clock=clock)


def _count(db, model):
    with db.session() as s:
        return s.execute(select(func.count()).select_from(model)).scalar_one()


def test_first_trigger_creates_incident(manager, db):
    action = manager.process_trigger(make_event("error"), spike())
    assert action.is_new
    assert action.action == "created"
    inc = action.incident
    assert inc.status == IncidentStatus.OPEN
    assert inc.severity == IncidentSeverity.ERROR
    assert inc.fingerprint == FP
    assert inc.opened_at == NOW
    assert inc.last_seen_at == NOW
    assert _count(db, IncidentEvent) == 1


def test_repeat_trigger_dedups_and_touches(manager, db, clock):
    first = manager.process_trigger(make_event("error"), spike())
    clock.advance(minutes=2)
    second = manager.process_trigger(make_event("error"), spike())

    assert second.is_new is False
    assert second.action == "updated"
    assert second.incident.id == first.incident.id
    assert second.incident.last_seen_at == NOW + timedelta(minutes=2)
    assert second.incident.opened_at == NOW
    assert _count(db, Incident) == 1
    assert _count(db, IncidentEvent) == 2


def test_severity_only_escalates(manager):
    inc = manager.process_trigger(make_event("error"), spike(IncidentSeverity.WARN)).incident
    assert inc.severity == IncidentSeverity.WARN

    inc = manager.process_trigger(make_event("error"), spike(IncidentSeverity.ERROR)).incident
    assert inc.severity == IncidentSeverity.ERROR

    inc = manager.process_trigger(make_event("error"), spike(IncidentSeverity.WARN)).incident
    assert inc.severity == IncidentSeverity.ERROR

    inc = manager.process_trigger(make_event("error"), spike(IncidentSeverity.CRITICAL)).incident
    assert inc.severity == IncidentSeverity.CRITICAL


def test_other_environment_gets_its_own_incident(manager, db):
    manager.process_trigger(make_event("error"), spike())
    staging = make_event("error", environment="staging")
    action = manager.process_trigger(staging, spike(fp="E500|/checkout|staging"))
    assert action.is_new
    assert _count(db, Incident) == 2


def test_trigger_after_resolve_opens_new_incident(manager, db):
    first = manager.process_trigger(make_event("error"), spike()).incident
    assert manager.resolve(first.id)
    second = manager.process_trigger(make_event("error"), spike())
    assert second.is_new
    assert second.incident.id != first.id
    assert _count(db, Incident) == 2


def test_investigating_incident_is_not_deduped_into(manager):
    first = manager.process_trigger(make_event("error"), spike()).incident
    assert manager.mark_investigating(first.id)
    second = manager.process_trigger(make_event("error"), spike())
    assert second.is_new
    assert manager.get(first.id).status == IncidentStatus.INVESTIGATING


def test_resolve_sets_resolved_at(manager, clock):
    inc = manager.process_trigger(make_event("error"), spike()).incident
    clock.advance(minutes=20)
    assert manager.resolve(inc.id)
    stored = manager.get(inc.id)
    assert stored.status == IncidentStatus.RESOLVED
    assert stored.resolved_at == NOW + timedelta(minutes=20)


def test_resolve_unknown_id(manager):
    assert manager.resolve("does-not-exist") is False


def test_mark_investigating_only_from_open(manager):
    inc = manager.process_trigger(make_event("error"), spike()).incident
    manager.resolve(inc.id)
    assert manager.mark_investigating(inc.id) is False
    assert manager.get(inc.id).status == IncidentStatus.RESOLVED


def test_recent_events_newest_first(manager, clock):
    inc = manager.process_trigger(make_event("error", occurred_at=NOW - timedelta(minutes=3)), spike()).incident
    manager.process_trigger(make_event("error", occurred_at=NOW - timedelta(minutes=1)), spike())
    manager.process_trigger(make_event("error", occurred_at=NOW - timedelta(minutes=2)), spike())

    events = manager.recent_events(inc.id)
    assert [e.occurred_at for e in events] == [
        NOW - timedelta(minutes=1),
        NOW - timedelta(minutes=2),
        NOW - timedelta(minutes=3),
    ]
    assert events[0].attributes == {"error_code": "E500", "route": "/checkout"}
    assert len(manager.recent_events(inc.id, limit=2)) == 2


def test_find_stale_excludes_investigating(manager, clock):
    quiet = manager.process_trigger(make_event("error"), spike()).incident
    claimed = manager.process_trigger(
        make_event("error", environment="dev"), spike(fp="E500|/checkout|dev")
    ).incident
    manager.mark_investigating(claimed.id)

    later = NOW + timedelta(minutes=16)
    assert [i.id for i in manager.find_stale(15, later)] == [quiet.id]
    assert manager.find_stale(15, NOW + timedelta(minutes=14)) == []


class RacingManager(IncidentLifecycleManager):
    """Commits a competing open incident between the lookup and the insert."""

    def __init__(self, db, clock):
        super().__init__(db, clock=clock)
        self.competitor_id = None

    def _touch_open(self, s, event, rule, now):
        if self.competitor_id is None:
            with self.db.session() as other:
                rival = Incident(
                    org_id=event.org_id,
                    project_id=event.project_id,
                    environment=event.environment,
                    fingerprint=rule.fingerprint,
                    status=IncidentStatus.OPEN,
                    severity=IncidentSeverity.WARN,
                    title="Error spike from another replica",
                    opened_at=now - timedelta(seconds=1),
                    last_seen_at=now - timedelta(seconds=1),
                )
                other.add(rival)
                other.flush()
                self.competitor_id = rival.id
            return None
        return super()._touch_open(s, event, rule, now)


def test_create_race_falls_back_to_existing_open_incident(db, clock):
    manager = RacingManager(db, clock)

    action = manager.process_trigger(make_event("error"), spike(IncidentSeverity.ERROR))

    assert action.is_new is False
    assert action.action == "updated"
    assert action.incident.id == manager.competitor_id
    assert action.incident.severity == IncidentSeverity.ERROR
    assert action.incident.last_seen_at == NOW
    assert _count(db, Incident) == 1
    with db.session() as s:
        links = s.execute(select(IncidentEvent.incident_id)).scalars().all()
    assert links == [manager.competitor_id]
