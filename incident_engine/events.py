"""
File: events.py
Purpose: Canonical event envelope consumed from the raw events hub, plus the
         pure helpers that derive grouping keys from it.

Rules:
- error events fingerprint as  error_code|route|environment
- signup events fingerprint as signup|environment
- anything else fingerprints as event_type|environment
- only error and signup events are counted in metric buckets
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .errors import MalformedEventError
from .models import MetricName

Environment = Literal["prod", "staging", "dev"]
EventType = Literal["error", "http_request", "signup", "deploy", "feedback", "custom"]
Severity = Literal["debug", "info", "warn", "error", "critical"]


class EventEnvelope(BaseModel):
    """Immutable canonical event as published by the ingest service."""
    schema_version: Literal["1.0"] = "1.0"
    event_id: uuid.UUID
    occurred_at: datetime
    received_at: datetime
    org_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)
    environment: Environment
    event_type: EventType
    severity: Severity
    message: str = Field(..., min_length=1)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True, "extra": "ignore"}

    @field_validator("occurred_at", "received_at")
    @classmethod
    def _as_utc(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC; normalise aware ones to UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator("attributes", "payload", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return {} if v is None else v

    def attr(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """String attribute lookup; missing or null values yield default."""
        v = self.attributes.get(key)
        return default if v is None else str(v)


def parse_envelope(raw: Union[bytes, str, Dict[str, Any]]) -> EventEnvelope:
    """Decode and validate an envelope; raise MalformedEventError on any defect."""
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = bytes(raw).decode("utf-8")
        if isinstance(raw, str):
            raw = json.loads(raw)
        if not isinstance(raw, dict):
            raise MalformedEventError(f"envelope must be a JSON object, got {type(raw).__name__}")
        return EventEnvelope.model_validate(raw)
    except MalformedEventError:
        raise
    except ValueError as e:
        # json.JSONDecodeError, UnicodeDecodeError and pydantic.ValidationError are ValueErrors
        raise MalformedEventError(str(e)) from e


def fingerprint(event: EventEnvelope) -> str:
    """Deterministic grouping key for incident detection."""
    if event.event_type == "error":
        error_code = event.attr("error_code", "unknown")
        route = event.attr("route", "unknown")
        return f"{error_code}|{route}|{event.environment}"
    if event.event_type == "signup":
        return f"signup|{event.environment}"
    return f"{event.event_type}|{event.environment}"


def metric_name(event: EventEnvelope) -> Optional[str]:
    """Bucket metric for the event, or None when the type is not tracked."""
    if event.event_type == "error":
        return MetricName.ERROR_COUNT
    if event.event_type == "signup":
        return MetricName.SIGNUP_COUNT
    return None


def align_to_minute(ts: datetime) -> datetime:
    """Floor a timestamp to the start of its containing UTC minute."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(second=0, microsecond=0)


def partition_key(event: EventEnvelope) -> str:
    """Channel partition key: org|project|error_code|route for errors, else org|project|event_type."""
    if event.event_type == "error":
        error_code = event.attr("error_code", "unknown")
        route = event.attr("route", "unknown")
        return f"{event.org_id}|{event.project_id}|{error_code}|{route}"
    return f"{event.org_id}|{event.project_id}|{event.event_type}"
