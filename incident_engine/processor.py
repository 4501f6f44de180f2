"""
File: processor.py
Purpose: AI job processing - lease a job, build the incident context, call the
         inference provider, store the structured summary.

Two independent triggers drive the same drain():
  - an APScheduler interval job (poll every JOB_POLL_INTERVAL_SECS), and
  - an advisory wake-up consumer on the ai-jobs hub.
Neither is assumed reliable alone; drain() is idempotent and single-flight.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .consumer import EventHubListener
from .db import Database
from .errors import IncidentNotFound, LLMTimeout
from .incidents import IncidentLifecycleManager
from .instrumentation import DB_TIME
from .lease import JobLeaseManager, LeasedJob
from .llm_client import InferenceClient
from .models import AIOutput, Incident, IncidentEvent, OUTPUT_TYPE_SUMMARY, utcnow
from .prompt import AISummary, build_messages, parse_summary
from .telemetry import get_tracer

log = logging.getLogger("incident-engine.processor")
tracer = get_tracer("incident-engine.processor")

CONTEXT_EVENT_LIMIT = 50
INFERENCE_TIMEOUT_SECS = 90.0
POLL_INTERVAL_SECS = 5
JOB_ID = "ai-job-poll"


class JobProcessor:
    """Drives one leased job to succeeded, queued-with-backoff or failed."""

    def __init__(
        self,
        incidents: IncidentLifecycleManager,
        leases: JobLeaseManager,
        llm: InferenceClient,
        db: Database,
        model: str,
        timeout: float = INFERENCE_TIMEOUT_SECS,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.incidents = incidents
        self.leases = leases
        self.llm = llm
        self.db = db
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.clock = clock

    def load_context(self, incident_id: str) -> Tuple[Incident, List[IncidentEvent]]:
        incident = self.incidents.get(incident_id)
        if incident is None:
            raise IncidentNotFound(f"incident {incident_id} not found")
        return incident, self.incidents.recent_events(incident_id, limit=CONTEXT_EVENT_LIMIT)

    def store_output(self, incident_id: str, summary: AISummary) -> str:
        output = AIOutput(
            incident_id=incident_id,
            output_type=OUTPUT_TYPE_SUMMARY,
            model=self.model,
            content=summary.model_dump(),
            created_at=self.clock(),
        )
        with DB_TIME.labels(route="ai_output").time():
            with self.db.session() as s:
                s.add(output)
        return output.id

    async def _summarize(self, job: LeasedJob) -> AISummary:
        incident, events = await asyncio.to_thread(self.load_context, job.incident_id)
        messages = build_messages(incident, events)
        try:
            text = await asyncio.wait_for(
                self.llm.chat(messages, max_tokens=self.max_tokens, temperature=self.temperature),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise LLMTimeout(f"inference exceeded {self.timeout}s") from e
        return parse_summary(text)

    async def process_one(self) -> bool:
        """
        Acquire and process a single job.
        Returns False when nothing was available, True when a job was handled
        (whether it succeeded or was recorded as a failure).
        """
        job = await asyncio.to_thread(self.leases.acquire)
        if job is None:
            return False

        with tracer.start_as_current_span(
            "ai_job.process",
            attributes={"job.id": job.id, "incident.id": job.incident_id, "job.attempt": job.attempt_count},
        ):
            await self._run(job)
        return True

    async def _run(self, job: LeasedJob) -> None:
        try:
            summary = await self._summarize(job)
            output_id = await asyncio.to_thread(self.store_output, job.incident_id, summary)
            await asyncio.to_thread(self.leases.complete, job.id)
            log.info(
                "incident summary stored",
                extra={"job_id": job.id, "incident_id": job.incident_id, "output_id": output_id},
            )
        except Exception as e:
            message = str(e) or type(e).__name__
            log.warning(
                "job attempt failed",
                extra={"job_id": job.id, "attempt": job.attempt_count, "err_type": type(e).__name__, "err": message},
            )
            await asyncio.to_thread(self.leases.fail, job.id, message, job.attempt_count, job.max_attempts)


class JobWakeListener(EventHubListener):
    """Advisory wake-up: any message on the ai-jobs hub triggers a drain."""

    name = "job wake listener"

    def __init__(
        self,
        conn_str: str,
        hub: str,
        group: str,
        on_wake: Callable[[], Awaitable[int]],
        client=None,
        checkpoint_store=None,
    ):
        super().__init__(conn_str, hub, group, client=client, checkpoint_store=checkpoint_store)
        self.on_wake = on_wake

    async def handle(self, body: bytes, partition_id: str) -> None:
        log.debug("job wake-up received", extra={"partition": partition_id})
        await self.on_wake()


class JobWorker:
    """Polling timer + wake-up consumer around JobProcessor.process_one()."""

    def __init__(
        self,
        processor: JobProcessor,
        scheduler: Optional[AsyncIOScheduler] = None,
        poll_interval_secs: int = POLL_INTERVAL_SECS,
    ):
        self.processor = processor
        self.scheduler = scheduler
        self.poll_interval_secs = poll_interval_secs
        self.wake: Optional[EventHubListener] = None
        self._lock = asyncio.Lock()
        self._rerun = False
        self._stopping = False

    async def drain(self) -> int:
        """Process jobs until none is available. Concurrent callers fold into the running drain."""
        if self._lock.locked():
            self._rerun = True
            return 0
        processed = 0
        async with self._lock:
            while not self._stopping:
                try:
                    handled = await self.processor.process_one()
                except Exception as e:
                    log.error("job drain aborted", extra={"err": str(e)})
                    break
                if handled:
                    processed += 1
                    continue
                if self._rerun:
                    self._rerun = False
                    continue
                break
        if processed:
            log.info("job drain finished", extra={"processed": processed})
        return processed

    async def start(self) -> None:
        self._stopping = False
        if self.scheduler is not None and not self.scheduler.get_job(JOB_ID):
            self.scheduler.add_job(
                self.drain,
                IntervalTrigger(seconds=self.poll_interval_secs),
                id=JOB_ID,
                next_run_time=datetime.now(timezone.utc),
                max_instances=1,
                coalesce=True,
            )
        if self.wake is not None:
            await self.wake.start()
        log.info("AI job worker started", extra={"poll_interval_secs": self.poll_interval_secs})

    async def stop(self) -> None:
        """Stop both triggers and wait for the in-flight job to finish."""
        self._stopping = True
        if self.scheduler is not None and self.scheduler.get_job(JOB_ID):
            self.scheduler.remove_job(JOB_ID)
        if self.wake is not None:
            await self.wake.stop()
        async with self._lock:
            pass
        log.info("AI job worker stopped")
