"""
File: main.py
Purpose: Application entrypoint. Builds the database, managers and background
         roles from Settings, wires routers, logging and metrics.

Roles (both on by default, split across deployments with RUN_ENGINE / RUN_AI_WORKER):
  - engine:    raw-event consumer + auto-resolve sweeper
  - ai worker: job poll timer + wake-up consumer + JobProcessor
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from . import __version__
from .ai_jobs import EventHubJobNotifier, JobEnqueuer, NullJobNotifier
from .auto_resolve import AutoResolveSweeper
from .buckets import BucketAggregator
from .config import Settings
from .consumer import EventHubEventConsumer, EventPipeline, get_checkpoint_store
from .db import Database
from .incidents import IncidentLifecycleManager
from .instrumentation import LATENCY, REQUESTS, setup_metrics
from .lease import JobLeaseManager
from .llm_client import InferenceClient
from .logging_setup import configure_logging
from .processor import JobProcessor, JobWakeListener, JobWorker
from .routers import routers
from .rules import RuleEvaluator
from .telemetry import instrument_app, setup_tracing

log = logging.getLogger("incident-engine")


class Runtime:
    """Every long-lived component of one process, with explicit start/stop."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.db = Database(settings.SQLALCHEMY_URL, settings.PG_POOL_MIN, settings.PG_POOL_MAX)
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.notifier = None
        self.checkpoint_store = None
        self.incidents = IncidentLifecycleManager(self.db)
        self.pipeline: Optional[EventPipeline] = None
        self.consumer: Optional[EventHubEventConsumer] = None
        self.sweeper: Optional[AutoResolveSweeper] = None
        self.llm: Optional[InferenceClient] = None
        self.worker: Optional[JobWorker] = None

    def _build_engine(self) -> None:
        s = self.settings
        if s.EVENTHUB_CONN and s.AI_JOBS_EVENTHUB_NAME:
            self.notifier = EventHubJobNotifier(s.EVENTHUB_CONN, s.AI_JOBS_EVENTHUB_NAME)
        else:
            self.notifier = NullJobNotifier()
        buckets = BucketAggregator(self.db)
        self.pipeline = EventPipeline(
            buckets=buckets,
            rules=RuleEvaluator(buckets),
            incidents=self.incidents,
            enqueuer=JobEnqueuer(self.db, self.notifier),
        )
        if s.EVENTHUB_CONN and s.EVENTHUB_NAME:
            self.consumer = EventHubEventConsumer(
                s.EVENTHUB_CONN,
                s.EVENTHUB_NAME,
                s.EVENTHUB_CONSUMER,
                self.pipeline,
                checkpoint_store=self.checkpoint_store,
            )
        else:
            log.warning("EVENTHUB_CONN not set; raw event consumer disabled")
        self.sweeper = AutoResolveSweeper(
            self.incidents,
            scheduler=self.scheduler,
            interval_secs=s.AUTO_RESOLVE_INTERVAL_SECS,
            stale_after_minutes=s.STALE_AFTER_MINUTES,
        )

    def _build_worker(self) -> None:
        s = self.settings
        if not s.llm_configured:
            log.warning("LLM_BASE_URL / LLM_MODEL not set; AI worker disabled")
            return
        self.llm = InferenceClient(s.LLM_BASE_URL, s.LLM_API_KEY, s.LLM_MODEL, timeout=s.LLM_TIMEOUT)
        processor = JobProcessor(
            incidents=self.incidents,
            leases=JobLeaseManager(self.db),
            llm=self.llm,
            db=self.db,
            model=s.LLM_MODEL,
            timeout=s.LLM_TIMEOUT,
            max_tokens=s.LLM_MAX_TOKENS,
            temperature=s.LLM_TEMPERATURE,
        )
        self.worker = JobWorker(processor, scheduler=self.scheduler, poll_interval_secs=s.JOB_POLL_INTERVAL_SECS)
        if s.EVENTHUB_CONN and s.AI_JOBS_EVENTHUB_NAME:
            self.worker.wake = JobWakeListener(
                s.EVENTHUB_CONN,
                s.AI_JOBS_EVENTHUB_NAME,
                s.AI_JOBS_CONSUMER,
                on_wake=self.worker.drain,
                checkpoint_store=self.checkpoint_store,
            )

    async def start(self) -> None:
        s = self.settings
        await self.db.aopen()
        if s.AUTO_CREATE_SCHEMA:
            await self.db.aensure_schema()

        if s.RUN_ENGINE or s.RUN_AI_WORKER:
            self.scheduler = AsyncIOScheduler(timezone="UTC")
        if s.EVENTHUB_CONN and (s.RUN_ENGINE or s.RUN_AI_WORKER):
            if s.CHECKPOINT_STORE_CONN:
                self.checkpoint_store = get_checkpoint_store(s.CHECKPOINT_STORE_CONN, s.CHECKPOINT_CONTAINER)
            else:
                log.warning("CHECKPOINT_STORE_CONN not set; every replica reads every partition from @latest")
        if s.RUN_ENGINE:
            self._build_engine()
        if s.RUN_AI_WORKER:
            self._build_worker()
        if self.llm is not None and s.LLM_VALIDATE_ON_START:
            await self.llm.validate_connection()

        if self.scheduler is not None:
            self.scheduler.start()
        if self.sweeper is not None:
            self.sweeper.start()
        if self.consumer is not None:
            await self.consumer.start()
        if self.worker is not None:
            await self.worker.start()
        log.info(
            "incident engine started",
            extra={"engine": s.RUN_ENGINE, "ai_worker": self.worker is not None, "env": s.ENV},
        )

    async def stop(self) -> None:
        if self.worker is not None:
            await self.worker.stop()
        if self.consumer is not None:
            await self.consumer.stop()
        if self.sweeper is not None:
            self.sweeper.stop()
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self.llm is not None:
            await self.llm.aclose()
        if self.notifier is not None:
            self.notifier.close()
        if self.checkpoint_store is not None:
            await self.checkpoint_store.close()
        await self.db.aclose()
        log.info("incident engine stopped")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI app; components are created and started in the lifespan."""
    settings = settings or Settings()
    setup_tracing(settings.SERVICE_NAME, settings.OTEL_EXPORTER)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage app startup/shutdown lifecycle."""
        configure_logging(settings.LOG_LEVEL, settings.SDK_LOG_LEVEL)
        setup_metrics(app)
        runtime = Runtime(settings)
        app.state.runtime = runtime
        try:
            await runtime.start()
            yield
        finally:
            await runtime.stop()
            app.state.runtime = None

    app = FastAPI(
        title="Signals Incident Engine",
        version=__version__,
        lifespan=lifespan,
    )

    # Simple request timing middleware for metrics
    @app.middleware("http")
    async def prometheus_mw(request, call_next):
        """Track request metrics and latency histograms."""
        route = request.url.path
        with LATENCY.labels(route=route).time():
            resp = await call_next(request)
        REQUESTS.labels(route=route, method=request.method, status=str(resp.status_code)).inc()
        return resp

    for router in routers:
        app.include_router(router)
    instrument_app(app)
    return app


def run() -> None:
    """Console entrypoint: serve the app with uvicorn."""
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        log_config=None,
    )


if __name__ == "__main__":
    run()
