"""
File: auto_resolve.py
Purpose: Periodically close open incidents that have gone quiet.

Runs once at startup and then every AUTO_RESOLVE_INTERVAL_SECS (default 5 min).
An incident is stale when last_seen_at is more than STALE_AFTER_MINUTES (15)
old. One failing resolve never blocks the rest of the sweep. Several sweepers
may run at once; resolving twice only rewrites resolved_at.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .incidents import IncidentLifecycleManager
from .models import utcnow

log = logging.getLogger("incident-engine.auto_resolve")

TICKER_INTERVAL_SECS = 5 * 60
STALE_AFTER_MINUTES = 15
JOB_ID = "auto-resolve"


class AutoResolveSweeper:
    """Background task that resolves stale open incidents."""

    def __init__(
        self,
        incidents: IncidentLifecycleManager,
        scheduler: Optional[AsyncIOScheduler] = None,
        interval_secs: int = TICKER_INTERVAL_SECS,
        stale_after_minutes: int = STALE_AFTER_MINUTES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.incidents = incidents
        self.scheduler = scheduler
        self.interval_secs = interval_secs
        self.stale_after_minutes = stale_after_minutes
        self.clock = clock

    def run_once(self, now: Optional[datetime] = None) -> int:
        """Resolve every stale incident; returns how many were resolved."""
        stale = self.incidents.find_stale(self.stale_after_minutes, now or self.clock())
        if not stale:
            return 0

        log.info("auto-resolving stale incidents", extra={"count": len(stale)})
        resolved = 0
        for incident in stale:
            try:
                if self.incidents.resolve(incident.id):
                    resolved += 1
            except Exception as e:
                log.error("auto-resolve failed", extra={"incident_id": incident.id, "err": str(e)})
        return resolved

    async def tick(self) -> None:
        """Scheduler entry point; a failed sweep is logged and retried next tick."""
        try:
            await asyncio.to_thread(self.run_once)
        except Exception as e:
            log.error("auto-resolve check failed", extra={"err": str(e)})

    def start(self) -> None:
        """Register the interval job; the first run fires immediately."""
        if self.scheduler is None:
            raise RuntimeError("AutoResolveSweeper needs a scheduler to start")
        if self.scheduler.get_job(JOB_ID):
            log.warning("auto-resolve ticker already running")
            return
        self.scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self.interval_secs),
            id=JOB_ID,
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
        )
        log.info("auto-resolve ticker started", extra={"interval_secs": self.interval_secs})

    def stop(self) -> None:
        if self.scheduler is not None and self.scheduler.get_job(JOB_ID):
            self.scheduler.remove_job(JOB_ID)
            log.info("auto-resolve ticker stopped")
