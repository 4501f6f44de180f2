"""
File: tests/test_auto_resolve.py
Purpose: Stale incident sweeps, failure isolation and scheduler registration.
"""

import asyncio
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from incident_engine.auto_resolve import JOB_ID, AutoResolveSweeper
from incident_engine.incidents import IncidentLifecycleManager
from incident_engine.models import IncidentSeverity, IncidentStatus
from incident_engine.rules import RuleResult, RuleType

from conftest import NOW, make_event


def _open(manager, environment="prod"):
    rule = RuleResult(
        triggered=True,
        rule_type=RuleType.ERROR_SPIKE,
        fingerprint=f"E500|/checkout|{environment}",
        current_count=30,
        baseline=0.0,
        severity=IncidentSeverity.ERROR,
        title="Error spike: E500 on /checkout",
    )
    return manager.process_trigger(make_event("error", environment=environment), rule).incident


def test_sweep_resolves_only_stale_open(db, clock):
    manager = IncidentLifecycleManager(db, clock=clock)
    stale = _open(manager, "prod")
    claimed = _open(manager, "staging")
    manager.mark_investigating(claimed.id)
    clock.advance(minutes=10)
    fresh = _open(manager, "dev")

    sweeper = AutoResolveSweeper(manager, clock=clock)
    assert sweeper.run_once(NOW + timedelta(minutes=16)) == 1

    assert manager.get(stale.id).status == IncidentStatus.RESOLVED
    assert manager.get(claimed.id).status == IncidentStatus.INVESTIGATING
    assert manager.get(fresh.id).status == IncidentStatus.OPEN


def test_sweep_nothing_stale(db, clock):
    manager = IncidentLifecycleManager(db, clock=clock)
    _open(manager)
    assert AutoResolveSweeper(manager, clock=clock).run_once(NOW + timedelta(minutes=15)) == 0


class FlakyManager(IncidentLifecycleManager):
    """Fails to resolve one specific incident."""

    def __init__(self, db, clock, bad_id=None):
        super().__init__(db, clock=clock)
        self.bad_id = bad_id

    def resolve(self, incident_id):
        if incident_id == self.bad_id:
            raise RuntimeError("db hiccup")
        return super().resolve(incident_id)


def test_one_failure_does_not_stop_the_sweep(db, clock):
    manager = FlakyManager(db, clock)
    a = _open(manager, "prod")
    b = _open(manager, "staging")
    manager.bad_id = a.id

    resolved = AutoResolveSweeper(manager, clock=clock).run_once(NOW + timedelta(minutes=30))
    assert resolved == 1
    assert manager.get(a.id).status == IncidentStatus.OPEN
    assert manager.get(b.id).status == IncidentStatus.RESOLVED


def test_tick_swallows_errors(db, clock):
    class Broken:
        def find_stale(self, *args, **kwargs):
            raise RuntimeError("db down")

    asyncio.run(AutoResolveSweeper(Broken(), clock=clock).tick())


def test_start_registers_interval_job(db, clock):
    manager = IncidentLifecycleManager(db, clock=clock)
    scheduler = AsyncIOScheduler(timezone="UTC")
    sweeper = AutoResolveSweeper(manager, scheduler=scheduler, interval_secs=300)

    sweeper.start()
    sweeper.start()  # second start is a no-op
    job = scheduler.get_job(JOB_ID)
    assert job is not None
    assert job.trigger.interval == timedelta(seconds=300)

    sweeper.stop()
    assert scheduler.get_job(JOB_ID) is None
