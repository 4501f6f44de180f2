"""
File: tests/test_processor.py
Purpose: JobProcessor success and failure paths, JobWorker drain.
"""

import asyncio
import json

import pytest
from sqlalchemy import select

from incident_engine.ai_jobs import JobEnqueuer
from incident_engine.errors import LLMUnavailable
from incident_engine.incidents import IncidentLifecycleManager
from incident_engine.lease import JobLeaseManager
from incident_engine.models import AIOutput, JobStatus, OUTPUT_TYPE_SUMMARY
from incident_engine.processor import JobProcessor, JobWorker
from incident_engine.rules import RuleResult, RuleType

from conftest import make_event

GOOD = json.dumps({
    "title": "Checkout errors",
    "impact": "Payments failing",
    "likely_causes": ["bad deploy"],
    "evidence": ["E500 on /checkout"],
    "next_steps": ["roll back"],
    "confidence": 0.8,
})


class FakeLLM:
    def __init__(self, *replies, delay=0.0):
        self.replies = list(replies)
        self.delay = delay
        self.calls = []

    async def chat(self, messages, max_tokens=1024, temperature=0.7):
        self.calls.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def incidents(db, clock):
    return IncidentLifecycleManager(db, clock=clock)


@pytest.fixture
def leases(db, clock):
    return JobLeaseManager(db, clock=clock)


@pytest.fixture
def job_id(db, clock, incidents):
    rule = RuleResult(
        triggered=True, rule_type=RuleType.ERROR_SPIKE, fingerprint="E500|/checkout|prod",
        current_count=30, baseline=0.0, severity="error", title="Error spike: E500 on /checkout",
    )
    incident = incidents.process_trigger(make_event("error"), rule).incident
    return JobEnqueuer(db, clock=clock).enqueue(incident.id)


def _processor(db, clock, incidents, leases, llm, timeout=90):
    return JobProcessor(incidents, leases, llm, db, model="test-model", timeout=timeout, clock=clock)


def _outputs(db):
    with db.session() as s:
        return list(s.execute(select(AIOutput)).scalars().all())


def test_success_stores_output_and_completes(db, clock, incidents, leases, job_id):
    llm = FakeLLM(f"Here you go: {GOOD}")
    processor = _processor(db, clock, incidents, leases, llm)

    assert asyncio.run(processor.process_one()) is True

    assert leases.get(job_id).status == JobStatus.SUCCEEDED
    [output] = _outputs(db)
    assert output.output_type == OUTPUT_TYPE_SUMMARY
    assert output.model == "test-model"
    assert output.content["title"] == "Checkout errors"
    assert output.content["confidence"] == 0.8

    system, user = llm.calls[0]
    assert system["role"] == "system"
    assert "Error spike: E500 on /checkout" in user["content"]


def test_no_job_returns_false(db, clock, incidents, leases):
    processor = _processor(db, clock, incidents, leases, FakeLLM())
    assert asyncio.run(processor.process_one()) is False


def test_parse_failure_is_retried(db, clock, incidents, leases, job_id):
    processor = _processor(db, clock, incidents, leases, FakeLLM("I could not decide"))
    assert asyncio.run(processor.process_one()) is True

    job = leases.get(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.attempt_count == 1
    assert "No JSON" in job.last_error
    assert _outputs(db) == []


def test_provider_error_then_success(db, clock, incidents, leases, job_id):
    llm = FakeLLM(LLMUnavailable("LLM API error (503)"), GOOD)
    processor = _processor(db, clock, incidents, leases, llm)

    asyncio.run(processor.process_one())
    assert leases.get(job_id).status == JobStatus.QUEUED

    clock.advance(seconds=5)
    asyncio.run(processor.process_one())
    job = leases.get(job_id)
    assert job.status == JobStatus.SUCCEEDED
    assert job.attempt_count == 2


def test_timeout_counts_as_failure(db, clock, incidents, leases, job_id):
    processor = _processor(db, clock, incidents, leases, FakeLLM(GOOD, delay=1.0), timeout=0.05)
    asyncio.run(processor.process_one())
    job = leases.get(job_id)
    assert job.status == JobStatus.QUEUED
    assert "inference exceeded" in job.last_error


def test_exhausted_attempts_fail_terminally(db, clock, incidents, leases, job_id):
    llm = FakeLLM("nope", "nope", "nope")
    processor = _processor(db, clock, incidents, leases, llm)
    for _ in range(3):
        asyncio.run(processor.process_one())
        clock.advance(minutes=1)

    job = leases.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempt_count == 3
    assert asyncio.run(processor.process_one()) is False


def test_worker_drain_processes_all_available(db, clock, incidents, leases, job_id):
    other = JobEnqueuer(db, clock=clock).enqueue(leases.get(job_id).incident_id)
    worker = JobWorker(_processor(db, clock, incidents, leases, FakeLLM(GOOD, GOOD)))

    assert asyncio.run(worker.drain()) == 2
    assert leases.get(job_id).status == JobStatus.SUCCEEDED
    assert leases.get(other).status == JobStatus.SUCCEEDED


def test_worker_drain_is_single_flight(db, clock, incidents, leases, job_id):
    worker = JobWorker(_processor(db, clock, incidents, leases, FakeLLM(GOOD, delay=0.1)))

    async def both():
        return await asyncio.gather(worker.drain(), worker.drain())

    assert sorted(asyncio.run(both())) == [0, 1]


def test_worker_stop_waits_for_in_flight(db, clock, incidents, leases, job_id):
    worker = JobWorker(_processor(db, clock, incidents, leases, FakeLLM(GOOD, delay=0.1)))

    async def run():
        task = asyncio.create_task(worker.drain())
        await asyncio.sleep(0.05)
        await worker.stop()
        return task.done(), await task

    done, processed = asyncio.run(run())
    assert done is True
    assert processed == 1
    assert leases.get(job_id).status == JobStatus.SUCCEEDED
