"""
File: rules.py
Purpose: Detection rules evaluated per incoming event.

- Error spike:  count_5m >= 30 AND (baseline == 0 OR count_5m >= 3 * baseline),
                baseline = average per 5-minute window over the 60 minutes
                ending 5 minutes ago.
- Signup drop:  baseline_60m >= 40 AND count_15m <= 10.

The first rule that triggers wins; untracked event types never trigger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .buckets import BucketAggregator
from .events import EventEnvelope, fingerprint
from .instrumentation import RULE_TRIGGERS
from .models import IncidentSeverity, MetricName, utcnow

log = logging.getLogger("incident-engine.rules")

# Error spike thresholds
SPIKE_WINDOW_MINUTES = 5
SPIKE_BASELINE_MINUTES = 60
SPIKE_MIN_COUNT = 30
SPIKE_MULTIPLIER = 3
SPIKE_CRITICAL_RATIO = 10
SPIKE_ERROR_RATIO = 5

# Signup drop thresholds
DROP_WINDOW_MINUTES = 15
DROP_BASELINE_MINUTES = 60
DROP_MIN_BASELINE = 40
DROP_MAX_COUNT = 10
DROP_CRITICAL_RATIO = 0.1
DROP_ERROR_RATIO = 0.25


class RuleType:
    ERROR_SPIKE = "error_spike"
    SIGNUP_DROP = "signup_drop"


@dataclass(frozen=True)
class RuleResult:
    """Outcome of one rule for one event."""
    triggered: bool
    rule_type: str
    fingerprint: str
    current_count: int
    baseline: float
    severity: str
    title: str


class RuleEvaluator:
    """Reads recent counters and a baseline; decides whether an event stream is anomalous."""

    def __init__(self, buckets: BucketAggregator, clock: Callable[[], datetime] = utcnow):
        self.buckets = buckets
        self.clock = clock

    def evaluate(self, event: EventEnvelope) -> Optional[RuleResult]:
        """Return the first triggered rule result, or None if nothing triggers."""
        now = self.clock()
        for rule in (self.error_spike, self.signup_drop):
            result = rule(event, now)
            if result is not None and result.triggered:
                RULE_TRIGGERS.labels(rule=result.rule_type, severity=result.severity).inc()
                log.info(
                    "rule triggered",
                    extra={
                        "rule": result.rule_type,
                        "fingerprint": result.fingerprint,
                        "count": result.current_count,
                        "baseline": result.baseline,
                        "severity": result.severity,
                    },
                )
                return result
        return None

    def error_spike(self, event: EventEnvelope, now: Optional[datetime] = None) -> Optional[RuleResult]:
        if event.event_type != "error":
            return None

        now = now or self.clock()
        fp = fingerprint(event)
        count5m = self.buckets.count_last_n_minutes(
            event.project_id, event.environment, MetricName.ERROR_COUNT, fp,
            SPIKE_WINDOW_MINUTES, reference_time=now,
        )
        if count5m < SPIKE_MIN_COUNT:
            return RuleResult(
                triggered=False,
                rule_type=RuleType.ERROR_SPIKE,
                fingerprint=fp,
                current_count=count5m,
                baseline=0.0,
                severity=IncidentSeverity.WARN,
                title="",
            )

        baseline = self.buckets.baseline_average(
            event.project_id, event.environment, MetricName.ERROR_COUNT, fp,
            SPIKE_BASELINE_MINUTES, SPIKE_WINDOW_MINUTES, reference_time=now,
        )
        is_spike = baseline == 0 or count5m >= SPIKE_MULTIPLIER * baseline

        severity = IncidentSeverity.ERROR
        if baseline > 0:
            ratio = count5m / baseline
            if ratio >= SPIKE_CRITICAL_RATIO:
                severity = IncidentSeverity.CRITICAL
            elif ratio >= SPIKE_ERROR_RATIO:
                severity = IncidentSeverity.ERROR
            else:
                severity = IncidentSeverity.WARN

        error_code = event.attr("error_code", "Unknown")
        route = event.attr("route", "unknown")
        return RuleResult(
            triggered=is_spike,
            rule_type=RuleType.ERROR_SPIKE,
            fingerprint=fp,
            current_count=count5m,
            baseline=baseline,
            severity=severity,
            title=f"Error spike: {error_code} on {route}",
        )

    def signup_drop(self, event: EventEnvelope, now: Optional[datetime] = None) -> Optional[RuleResult]:
        if event.event_type != "signup":
            return None

        now = now or self.clock()
        fp = fingerprint(event)
        baseline60m = self.buckets.count_last_n_minutes(
            event.project_id, event.environment, MetricName.SIGNUP_COUNT, fp,
            DROP_BASELINE_MINUTES, reference_time=now,
        )
        # Not enough traffic in the last hour to call anything a drop
        if baseline60m < DROP_MIN_BASELINE:
            return RuleResult(
                triggered=False,
                rule_type=RuleType.SIGNUP_DROP,
                fingerprint=fp,
                current_count=0,
                baseline=float(baseline60m),
                severity=IncidentSeverity.WARN,
                title="",
            )

        count15m = self.buckets.count_last_n_minutes(
            event.project_id, event.environment, MetricName.SIGNUP_COUNT, fp,
            DROP_WINDOW_MINUTES, reference_time=now,
        )
        is_drop = count15m <= DROP_MAX_COUNT

        expected_per_15m = baseline60m / (DROP_BASELINE_MINUTES / DROP_WINDOW_MINUTES)
        severity = IncidentSeverity.WARN
        if expected_per_15m > 0:
            ratio = count15m / expected_per_15m
            if ratio <= DROP_CRITICAL_RATIO:
                severity = IncidentSeverity.CRITICAL
            elif ratio <= DROP_ERROR_RATIO:
                severity = IncidentSeverity.ERROR

        return RuleResult(
            triggered=is_drop,
            rule_type=RuleType.SIGNUP_DROP,
            fingerprint=fp,
            current_count=count15m,
            baseline=float(baseline60m),
            severity=severity,
            title=f"Signup drop detected in {event.environment}",
        )
