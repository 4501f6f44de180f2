"""
File: incidents.py
Purpose: Incident lifecycle - create on first trigger, escalate and touch on
         repeat triggers, link every triggering event, resolve.

Dedup is by (project, environment, fingerprint) among OPEN incidents only.
Severity moves warn < error < critical and is never lowered; the upgrade is a
single conditional UPDATE so concurrent triggers cannot downgrade each other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import Database
from .events import EventEnvelope
from .instrumentation import DB_TIME, INCIDENTS
from .models import Incident, IncidentEvent, IncidentSeverity, IncidentStatus, utcnow
from .rules import RuleResult

log = logging.getLogger("incident-engine.incidents")

_SEVERITY_RANK = case(IncidentSeverity.RANK, value=Incident.severity, else_=0)


@dataclass
class IncidentAction:
    """What process_trigger did; callers enqueue an AI job only when is_new."""
    action: str  # created | updated
    incident: Incident
    is_new: bool


class IncidentLifecycleManager:
    """Maps triggered anomalies to incident rows."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # -------------------------------------------------------------------------
    # Trigger handling
    # -------------------------------------------------------------------------

    def process_trigger(self, event: EventEnvelope, rule: RuleResult) -> IncidentAction:
        """Create or update the open incident for the rule's fingerprint and link the event."""
        now = self.clock()
        with DB_TIME.labels(route="incident_trigger").time():
            with self.db.session() as s:
                incident = self._touch_open(s, event, rule, now)
                is_new = incident is None
                if is_new:
                    incident = self._create(s, event, rule, now)
                    if incident is None:
                        # Another writer opened it first; fall back to updating theirs.
                        incident = self._touch_open(s, event, rule, now)
                        is_new = False
                        if incident is None:
                            raise RuntimeError(
                                f"open incident for {rule.fingerprint} vanished during create"
                            )
                self._link(s, incident.id, event)

        action = "created" if is_new else "updated"
        INCIDENTS.labels(action=action).inc()
        if is_new:
            log.info(
                "incident created",
                extra={"incident_id": incident.id, "title": incident.title, "severity": incident.severity},
            )
        return IncidentAction(action=action, incident=incident, is_new=is_new)

    def find_open(self, project_id: str, environment: str, fp: str) -> Optional[Incident]:
        with self.db.session() as s:
            return self._find_open(s, project_id, environment, fp)

    def _find_open(self, s: Session, project_id: str, environment: str, fp: str) -> Optional[Incident]:
        q = (
            select(Incident)
            .where(
                Incident.project_id == project_id,
                Incident.environment == environment,
                Incident.fingerprint == fp,
                Incident.status == IncidentStatus.OPEN,
            )
            .limit(1)
        )
        return s.execute(q).scalars().first()

    def _touch_open(self, s: Session, event: EventEnvelope, rule: RuleResult, now: datetime) -> Optional[Incident]:
        existing = self._find_open(s, event.project_id, event.environment, rule.fingerprint)
        if existing is None:
            return None
        new_rank = IncidentSeverity.RANK.get(rule.severity, 0)
        stmt = (
            update(Incident)
            .where(Incident.id == existing.id, Incident.status == IncidentStatus.OPEN)
            .values(
                last_seen_at=now,
                severity=case((_SEVERITY_RANK < new_rank, rule.severity), else_=Incident.severity),
            )
            .execution_options(synchronize_session=False)
        )
        if s.execute(stmt).rowcount == 0:
            # Resolved or claimed between the read and the write.
            return None
        s.refresh(existing)
        return existing

    def _create(self, s: Session, event: EventEnvelope, rule: RuleResult, now: datetime) -> Optional[Incident]:
        incident = Incident(
            org_id=event.org_id,
            project_id=event.project_id,
            environment=event.environment,
            fingerprint=rule.fingerprint,
            status=IncidentStatus.OPEN,
            severity=rule.severity,
            title=rule.title,
            opened_at=now,
            last_seen_at=now,
        )
        try:
            with s.begin_nested():
                s.add(incident)
                s.flush()
        except IntegrityError:
            log.info("concurrent incident create detected", extra={"fingerprint": rule.fingerprint})
            return None
        return incident

    def _link(self, s: Session, incident_id: str, event: EventEnvelope) -> None:
        s.add(IncidentEvent(
            incident_id=incident_id,
            event_id=str(event.event_id),
            occurred_at=event.occurred_at,
            event_type=event.event_type,
            severity=event.severity,
            attributes=dict(event.attributes),
        ))

    # -------------------------------------------------------------------------
    # Closure / operator actions
    # -------------------------------------------------------------------------

    def resolve(self, incident_id: str) -> bool:
        """Mark resolved with resolved_at=now. Not guarded against re-resolving."""
        now = self.clock()
        stmt = (
            update(Incident)
            .where(Incident.id == incident_id)
            .values(status=IncidentStatus.RESOLVED, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        with DB_TIME.labels(route="incident_resolve").time():
            with self.db.session() as s:
                found = s.execute(stmt).rowcount > 0
        if found:
            INCIDENTS.labels(action="resolved").inc()
            log.info("incident resolved", extra={"incident_id": incident_id})
        return found

    def mark_investigating(self, incident_id: str) -> bool:
        """Operator claim on an open incident; claimed incidents are never auto-resolved."""
        stmt = (
            update(Incident)
            .where(Incident.id == incident_id, Incident.status == IncidentStatus.OPEN)
            .values(status=IncidentStatus.INVESTIGATING)
            .execution_options(synchronize_session=False)
        )
        with self.db.session() as s:
            claimed = s.execute(stmt).rowcount > 0
        if claimed:
            INCIDENTS.labels(action="investigating").inc()
            log.info("incident claimed", extra={"incident_id": incident_id})
        return claimed

    def get(self, incident_id: str) -> Optional[Incident]:
        with self.db.session() as s:
            return s.get(Incident, incident_id)

    def find_stale(self, stale_after_minutes: int, reference_time: Optional[datetime] = None) -> List[Incident]:
        """Open incidents whose last_seen_at is older than the cutoff (investigating is excluded)."""
        cutoff = (reference_time or self.clock()) - timedelta(minutes=stale_after_minutes)
        q = select(Incident).where(
            Incident.status == IncidentStatus.OPEN,
            Incident.last_seen_at < cutoff,
        )
        with DB_TIME.labels(route="incident_stale").time():
            with self.db.session() as s:
                return list(s.execute(q).scalars().all())

    def recent_events(self, incident_id: str, limit: int = 50) -> List[IncidentEvent]:
        """Most recent linked events first."""
        q = (
            select(IncidentEvent)
            .where(IncidentEvent.incident_id == incident_id)
            .order_by(IncidentEvent.occurred_at.desc(), IncidentEvent.id.desc())
            .limit(limit)
        )
        with self.db.session() as s:
            return list(s.execute(q).scalars().all())
