"""
File: consumer.py
Purpose: Consume canonical event envelopes from Event Hubs and run each one
         through bucket aggregation -> rule evaluation -> incident lifecycle
         -> AI job enqueue.

Notes:
- With a blob checkpoint store, replicas sharing a consumer group split the
  partitions between them and resume from the last checkpoint after a restart.
  Without one, every client reads every partition from @latest, so only run a
  single replica per consumer group in that mode.
- The checkpoint is written after an event has been handled; delivery is at-least-once.
- Partition order is preserved: the SDK calls on_event sequentially per partition
  and each item is fully processed before the next.
- A malformed envelope or a storage failure for one event is logged and dropped;
  the stream never stops because of a single event.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Union

from azure.eventhub import EventData
from azure.eventhub.aio import EventHubConsumerClient
from azure.eventhub.extensions.checkpointstoreblobaio import BlobCheckpointStore

from .ai_jobs import JobEnqueuer
from .buckets import BucketAggregator
from .errors import MalformedEventError
from .events import EventEnvelope, parse_envelope
from .incidents import IncidentAction, IncidentLifecycleManager
from .instrumentation import EVENTS_CONSUMED
from .rules import RuleEvaluator
from .telemetry import get_tracer

log = logging.getLogger("incident-engine.consumer")
tracer = get_tracer("incident-engine.consumer")


def get_checkpoint_store(conn_str: str, container: str) -> BlobCheckpointStore:
    return BlobCheckpointStore.from_connection_string(conn_str, container_name=container)


def get_consumer(
    conn_str: str,
    hub: str,
    group: str,
    checkpoint_store: Optional[BlobCheckpointStore] = None,
    logging_enable: bool = False,
) -> EventHubConsumerClient:
    return EventHubConsumerClient.from_connection_string(
        conn_str=conn_str,
        eventhub_name=hub,
        consumer_group=group,
        checkpoint_store=checkpoint_store,
        logging_enable=logging_enable,
    )


def _raw_body(event: EventData) -> bytes:
    """Support both bytes and generator-of-bytes bodies across SDK versions."""
    body = getattr(event, "body", None)
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    return b"".join(part for part in body)


def decode_event_items(raw: bytes) -> List[Union[Dict[str, Any], str, bytes]]:
    """
    Split one message body into envelope candidates.
    Accepts a single JSON object, a JSON array of objects, or JSON lines.
    Lines that do not parse are returned as text so the caller can reject them;
    a body that is not valid UTF-8 comes back whole, as bytes.
    """
    try:
        text = raw.decode("utf-8").strip()
    except UnicodeDecodeError:
        return [bytes(raw)]
    if not text:
        return []

    try:
        obj = json.loads(text)
    except ValueError:
        obj = None
    else:
        if isinstance(obj, list):
            return [o if isinstance(o, dict) else json.dumps(o) for o in obj]
        if isinstance(obj, dict):
            return [obj]
        return [text]

    items: List[Union[Dict[str, Any], str, bytes]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except ValueError:
            items.append(line)
            continue
        items.append(parsed if isinstance(parsed, dict) else line)
    return items


class EventPipeline:
    """Synchronous per-event processing; called from a worker thread."""

    def __init__(
        self,
        buckets: BucketAggregator,
        rules: RuleEvaluator,
        incidents: IncidentLifecycleManager,
        enqueuer: JobEnqueuer,
    ):
        self.buckets = buckets
        self.rules = rules
        self.incidents = incidents
        self.enqueuer = enqueuer

    def handle_raw(self, body: Union[bytes, str, Dict[str, Any]]) -> Optional[IncidentAction]:
        """Parse then process; malformed input is counted and dropped."""
        try:
            event = parse_envelope(body)
        except MalformedEventError as e:
            EVENTS_CONSUMED.labels(outcome="dropped").inc()
            log.warning("dropping malformed event", extra={"err": str(e)[:500]})
            return None
        return self.process(event)

    def process(self, event: EventEnvelope) -> Optional[IncidentAction]:
        """Run one event through the detection chain. Returns the incident action, if any."""
        try:
            with tracer.start_as_current_span("event.process", attributes={"event.type": event.event_type}):
                self.buckets.record_event(event)
                rule = self.rules.evaluate(event)
                action = None
                if rule is not None:
                    action = self.incidents.process_trigger(event, rule)
                    if action.is_new:
                        self.enqueuer.enqueue(action.incident.id)
        except Exception as e:
            EVENTS_CONSUMED.labels(outcome="failed").inc()
            log.error(
                "event processing failed",
                extra={"event_id": str(event.event_id), "event_type": event.event_type, "err": str(e)},
            )
            return None

        EVENTS_CONSUMED.labels(outcome="processed").inc()
        return action


class EventHubListener:
    """Owns one async consumer client and its receive task."""

    name = "listener"

    def __init__(
        self,
        conn_str: str,
        hub: str,
        group: str,
        client: Optional[EventHubConsumerClient] = None,
        checkpoint_store: Optional[BlobCheckpointStore] = None,
    ):
        self.conn_str = conn_str
        self.hub = hub
        self.group = group
        self.checkpoint_store = checkpoint_store
        self._client = client
        self._task: Optional[asyncio.Task] = None

    async def handle(self, body: bytes, partition_id: str) -> None:
        raise NotImplementedError

    async def _on_event(self, partition_context, event) -> None:
        if event is None:
            return
        part = getattr(partition_context, "partition_id", "0") or "0"
        try:
            await self.handle(_raw_body(event), part)
        except Exception as e:
            log.error(f"{self.name} handler error", extra={"partition": part, "err": str(e)})
            return
        # Handled; move this partition's checkpoint past the event.
        try:
            await partition_context.update_checkpoint(event)
        except Exception as e:
            log.warning(f"{self.name} checkpoint error", extra={"partition": part, "err": str(e)})

    async def _run(self) -> None:
        async with self._client:
            try:
                log.info(
                    f"{self.name} starting receive",
                    extra={
                        "hub": self.hub,
                        "cg": self.group,
                        "start": "@latest",
                        "checkpoints": self.checkpoint_store is not None,
                    },
                )
                await self._client.receive(on_event=self._on_event, starting_position="@latest")
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log.error(f"{self.name} consumer error", extra={"hub": self.hub, "err": str(e)})
        log.info(f"{self.name} stopped", extra={"hub": self.hub})

    async def start(self) -> None:
        if self._task is not None:
            return
        if self._client is None:
            self._client = get_consumer(self.conn_str, self.hub, self.group, checkpoint_store=self.checkpoint_store)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        await self._client.close()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class EventHubEventConsumer(EventHubListener):
    """Feeds raw-event hub messages into the EventPipeline."""

    name = "event consumer"

    def __init__(
        self,
        conn_str: str,
        hub: str,
        group: str,
        pipeline: EventPipeline,
        client: Optional[EventHubConsumerClient] = None,
        checkpoint_store: Optional[BlobCheckpointStore] = None,
    ):
        super().__init__(conn_str, hub, group, client=client, checkpoint_store=checkpoint_store)
        self.pipeline = pipeline

    async def handle(self, body: bytes, partition_id: str) -> None:
        for item in decode_event_items(body):
            await asyncio.to_thread(self.pipeline.handle_raw, item)
