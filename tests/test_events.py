"""
File: tests/test_events.py
Purpose: Envelope validation and the pure key-derivation helpers.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from incident_engine.consumer import decode_event_items
from incident_engine.errors import MalformedEventError
from incident_engine.events import align_to_minute, fingerprint, metric_name, parse_envelope, partition_key
from incident_engine.models import MetricName

from conftest import make_event


def _raw(**overrides):
    doc = {
        "event_id": str(uuid.uuid4()),
        "occurred_at": "2024-06-01T12:00:30Z",
        "received_at": "2024-06-01T12:00:31Z",
        "org_id": "org-1",
        "project_id": "proj-1",
        "environment": "prod",
        "event_type": "error",
        "severity": "error",
        "message": "boom",
        "attributes": {"error_code": "E500", "route": "/checkout"},
    }
    doc.update(overrides)
    return doc


def test_parse_envelope_from_bytes():
    ev = parse_envelope(json.dumps(_raw()).encode("utf-8"))
    assert ev.project_id == "proj-1"
    assert ev.occurred_at.tzinfo is not None
    assert ev.attr("error_code") == "E500"


def test_parse_envelope_naive_timestamp_is_utc():
    ev = parse_envelope(_raw(occurred_at="2024-06-01T12:00:30"))
    assert ev.occurred_at == datetime(2024, 6, 1, 12, 0, 30, tzinfo=timezone.utc)


def test_parse_envelope_null_attributes_become_empty():
    ev = parse_envelope(_raw(attributes=None))
    assert ev.attributes == {}
    assert ev.attr("route", "unknown") == "unknown"


@pytest.mark.parametrize("raw", [
    b"not json",
    "[1, 2]",
    json.dumps(_raw(environment="qa")),
    json.dumps(_raw(event_type="metric")),
    json.dumps(_raw(project_id="")),
    json.dumps({"message": "only a message"}),
])
def test_parse_envelope_rejects_malformed(raw):
    with pytest.raises(MalformedEventError):
        parse_envelope(raw)


def test_fingerprints():
    assert fingerprint(make_event("error")) == "E500|/checkout|prod"
    assert fingerprint(make_event("error", error_code="E42")) == "E42|unknown|prod"
    assert fingerprint(make_event("signup", environment="staging")) == "signup|staging"
    assert fingerprint(make_event("deploy", environment="dev")) == "deploy|dev"


def test_metric_names():
    assert metric_name(make_event("error")) == MetricName.ERROR_COUNT
    assert metric_name(make_event("signup")) == MetricName.SIGNUP_COUNT
    assert metric_name(make_event("http_request")) is None


def test_partition_key():
    assert partition_key(make_event("error")) == "org-1|proj-1|E500|/checkout"
    assert partition_key(make_event("signup")) == "org-1|proj-1|signup"


def test_align_to_minute():
    ts = datetime(2024, 6, 1, 12, 0, 59, 999999, tzinfo=timezone.utc)
    assert align_to_minute(ts) == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    shifted = datetime(2024, 6, 1, 14, 30, 15, tzinfo=timezone(timedelta(hours=2)))
    assert align_to_minute(shifted) == datetime(2024, 6, 1, 12, 30, tzinfo=timezone.utc)


def test_decode_event_items_json_lines_and_arrays():
    one = json.dumps(_raw())
    assert len(decode_event_items(one.encode())) == 1
    assert len(decode_event_items(f"[{one}, {one}]".encode())) == 2

    items = decode_event_items(f"{one}\n\ngarbage\n{one}".encode())
    assert len(items) == 3
    assert items[1] == "garbage"
    assert decode_event_items(b"   ") == []
