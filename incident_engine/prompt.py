"""
Prompt construction and response parsing for incident summaries.

build_context() is a pure function of (incident, events) so it can be tested
without network access. parse_summary() accepts free text that should contain
one JSON object; anything without a parseable object or a title is rejected.
"""

import json
import re
from collections import Counter
from typing import Any, Dict, List, Sequence

from pydantic import BaseModel, Field, field_validator

from .errors import SummaryParseError
from .models import Incident, IncidentEvent

SAMPLE_EVENTS = 10

SYSTEM_PROMPT = """You are an expert incident analyst for a software monitoring system. Your job is to analyze incident data and provide concise, actionable summaries.

When analyzing an incident, provide:
1. A brief title (max 10 words)
2. Impact assessment (who/what is affected)
3. Likely root causes (based on error patterns)
4. Key evidence from the events
5. Recommended next steps

Respond in valid JSON format with this structure:
{
  "title": "Brief incident title",
  "impact": "Description of business/user impact",
  "likely_causes": ["cause1", "cause2"],
  "evidence": ["evidence1", "evidence2"],
  "next_steps": ["step1", "step2"],
  "confidence": 0.85
}

Be concise and focus on actionable insights."""

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class AISummary(BaseModel):
    """Structured summary stored in ai_outputs.content."""
    title: str = Field(..., min_length=1)
    impact: str = "Unknown impact"
    likely_causes: List[str] = Field(default_factory=list)
    evidence: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    confidence: float = 0.5

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return min(1.0, max(0.0, v))


def _iso(ts) -> str:
    return ts.isoformat() if ts is not None else "N/A"


def _event_summary(e: IncidentEvent) -> Dict[str, Any]:
    attrs = e.attributes or {}
    return {
        "time": _iso(e.occurred_at),
        "type": e.event_type,
        "severity": e.severity,
        "error_code": attrs.get("error_code"),
        "route": attrs.get("route"),
        "status_code": attrs.get("status_code"),
    }


def _distribution(values: List[Any], empty: str) -> str:
    counts = Counter(str(v) for v in values if v)
    if not counts:
        return f"- {empty}"
    # most_common keeps first-seen order among ties
    return "\n".join(f"- {k}: {n} occurrences" for k, n in counts.most_common())


def build_context(incident: Incident, events: Sequence[IncidentEvent]) -> str:
    """Bounded natural-language context; events are expected most recent first."""
    summaries = [_event_summary(e) for e in events]
    if events:
        time_range = f"{_iso(events[-1].occurred_at)} to {_iso(events[0].occurred_at)}"
    else:
        time_range = "N/A"

    return f"""Analyze this incident and provide a summary:

## Incident Details
- ID: {incident.id}
- Title: {incident.title}
- Status: {incident.status}
- Severity: {incident.severity}
- Environment: {incident.environment}
- Fingerprint: {incident.fingerprint}
- Opened: {_iso(incident.opened_at)}
- Last Seen: {_iso(incident.last_seen_at)}

## Event Statistics
- Total Events: {len(events)}
- Time Range: {time_range}

## Error Code Distribution
{_distribution([s["error_code"] for s in summaries], "No error codes found")}

## Route Distribution
{_distribution([s["route"] for s in summaries], "No routes found")}

## Sample Events (most recent {SAMPLE_EVENTS})
{json.dumps(summaries[:SAMPLE_EVENTS], indent=2, default=str)}

Provide your analysis in the required JSON format."""


def build_messages(incident: Incident, events: Sequence[IncidentEvent]) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_context(incident, events)},
    ]


def parse_summary(text: str) -> AISummary:
    """Extract the JSON object from a chatty response and validate it."""
    match = _JSON_OBJECT_RE.search(text or "")
    if not match:
        raise SummaryParseError("No JSON found in AI response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise SummaryParseError(f"Invalid JSON in AI response: {e}") from e
    if not isinstance(data, dict):
        raise SummaryParseError("AI response JSON is not an object")

    title = data.get("title")
    if not title or not isinstance(title, str):
        raise SummaryParseError("Invalid AI response: missing title")

    def _list(key: str) -> List[str]:
        v = data.get(key)
        return [str(x) for x in v] if isinstance(v, list) else []

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = 0.5

    return AISummary(
        title=title,
        impact=data.get("impact") if isinstance(data.get("impact"), str) and data.get("impact") else "Unknown impact",
        likely_causes=_list("likely_causes"),
        evidence=_list("evidence"),
        next_steps=_list("next_steps"),
        confidence=float(confidence),
    )
