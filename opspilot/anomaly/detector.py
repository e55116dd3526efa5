"""
Anomaly Detector

Independent risk scorer that can veto automation. Five checks:

(a) new_pattern      no match, or best match below the new-pattern threshold
(b) edge_case        >= 2 of: out-of-bounds amount, rare kind/category combination,
                     duration or content length outside bounds, conflicting fields
(c) unusual_context  >= 2 of: off-hours, high frequency for the actor/IP,
                     unusual actor behavior, system under anomaly load
(d) security_threat  injection markers in any string field; always critical
(e) data_quality     missing required fields or mistyped values; always low

Findings combine into one Anomaly (worst severity, mean confidence). Every
anomaly is stored; high and critical ones are escalated. If the detector
itself breaks, the event is treated as an anomaly needing human review.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from datetime import timedelta
from statistics import mean
from typing import Any

from opspilot.automation.collaborators import LoggingNotifier, Notifier
from opspilot.infrastructure.database import write_quietly
from opspilot.observability.logging import get_logger
from opspilot.observability.signals import SignalBus, SignalType
from opspilot.observability.telemetry import counter, log_event
from opspilot.runtime.policy import Policy
from opspilot.storage.models import (
    Anomaly,
    AnomalyFinding,
    AnomalyType,
    Event,
    Match,
    Severity,
    parse_timestamp,
    utc_now,
)
from opspilot.storage.repository import PatternStore

logger = get_logger(__name__)

SECURITY_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "sql_injection": (
        re.compile(r"(\b|')(OR|AND)\s+\d+\s*=\s*\d+", re.IGNORECASE),
        re.compile(r"(\b|')DROP\s+TABLE", re.IGNORECASE),
        re.compile(r"\bUNION\s+SELECT\b", re.IGNORECASE),
        re.compile(r";\s*DELETE\s+FROM\b", re.IGNORECASE),
    ),
    "script_injection": (
        re.compile(r"<script[^>]*>", re.IGNORECASE),
        re.compile(r"javascript:", re.IGNORECASE),
        re.compile(r"\bon(click|load|error|mouseover)\s*=", re.IGNORECASE),
    ),
    "template_injection": (
        re.compile(r"\$\{.*\}"),
        re.compile(r"\{\{.*\}\}"),
    ),
    "prototype_pollution": (
        re.compile(r"__proto__"),
        re.compile(r"constructor\["),
        re.compile(r"constructor\.prototype"),
    ),
}

SEVERITY_SCORES = {
    Severity.LOW: 0.25,
    Severity.MEDIUM: 0.5,
    Severity.HIGH: 0.75,
    Severity.CRITICAL: 1.0,
}

CONFLICTING_PAIRS = (
    ("start_time", "end_time"),
    ("start", "end"),
    ("start_date", "end_date"),
    ("check_in", "check_out"),
)

ESCALATION_SEVERITIES = (Severity.HIGH, Severity.CRITICAL)

_EVENT_FIELDS = {"kind", "category", "action", "timestamp", "urgent"}


def iter_strings(value: Any) -> Iterator[str]:
    """Every string in a nested structure, dict keys included."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for key, item in value.items():
            if isinstance(key, str):
                yield key
            yield from iter_strings(item)
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            yield from iter_strings(item)


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def risk_level(severity: Severity, confidence: float) -> Severity:
    score = SEVERITY_SCORES[severity] * confidence
    if score >= 0.9:
        return Severity.CRITICAL
    if score >= 0.7:
        return Severity.HIGH
    if score >= 0.5:
        return Severity.MEDIUM
    return Severity.LOW


class AnomalyDetector:
    """Runs the checks, combines findings, stores and escalates anomalies."""

    def __init__(
        self,
        store: PatternStore,
        policy: Policy,
        signals: SignalBus,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.signals = signals
        self.notifier = notifier or LoggingNotifier()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def pre_check(self, event: Event) -> Anomaly | None:
        """
        Match-independent checks run before pattern search.

        Returns:
            Stored Anomaly when any check flags the event, otherwise None
        """
        findings = self._run(
            event,
            lambda: [
                self.check_security(event),
                self.check_data_quality(event),
                self.check_edge_case(event),
                self.check_unusual_context(event),
            ],
        )
        if not findings:
            return None
        return self.record(self.combine(findings, event))

    def assess(self, event: Event, best_match: Match | None, reason: str) -> Anomaly:
        """
        Full assessment for an event the router will not automate.

        Always returns a stored Anomaly: when no check flags the event, the
        routing reason itself becomes a low-severity finding.
        """
        findings = self._run(
            event,
            lambda: [
                self.check_new_pattern(event, best_match),
                self.check_edge_case(event),
                self.check_unusual_context(event),
                self.check_security(event),
                self.check_data_quality(event),
            ],
        )
        if not findings:
            findings = [
                AnomalyFinding(
                    type=AnomalyType.NEW_PATTERN,
                    severity=Severity.LOW,
                    confidence=1.0 - best_match.confidence if best_match else 1.0,
                    reason=reason,
                )
            ]

        reasons = [reason]
        if best_match is not None:
            reasons.append(
                f"best_match pattern={best_match.pattern.id} source={best_match.source} "
                f"confidence={best_match.confidence:.3f}"
            )
        return self.record(self.combine(findings, event, reasons))

    def _run(
        self, event: Event, checks: Callable[[], list[AnomalyFinding | None]]
    ) -> list[AnomalyFinding]:
        try:
            return [finding for finding in checks() if finding is not None]
        except Exception as e:
            counter("anomaly.detector_failed")
            logger.error("Anomaly detection failed for %s event, failing safe: %s", event.kind, e)
            return [
                AnomalyFinding(
                    type=AnomalyType.UNUSUAL_CONTEXT,
                    severity=Severity.HIGH,
                    confidence=1.0,
                    reason=f"detector_error: {e}",
                    requires_human=True,
                )
            ]

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def is_sensitive(self, event: Event) -> bool:
        module = str(event.context.get("module") or "").lower()
        sensitive = self.policy.anomaly.sensitive_modules
        if event.kind.lower() in sensitive:
            return True
        return bool(module) and any(name in module for name in sensitive)

    def check_new_pattern(self, event: Event, best_match: Match | None) -> AnomalyFinding | None:
        threshold = self.policy.anomaly.new_pattern_max_confidence
        if best_match is not None and best_match.confidence >= threshold:
            return None

        severity = Severity.MEDIUM
        if event.urgent or self.is_sensitive(event):
            severity = Severity.HIGH
        return AnomalyFinding(
            type=AnomalyType.NEW_PATTERN,
            severity=severity,
            confidence=1.0 if best_match is None else 1.0 - best_match.confidence,
            reason="no_matching_pattern" if best_match is None else "weak_best_match",
            requires_human=severity == Severity.HIGH,
            details={"urgent": event.urgent, "sensitive": self.is_sensitive(event)},
        )

    def edge_case_indicators(self, event: Event) -> list[str]:
        ap = self.policy.anomaly
        ctx = event.context
        indicators = []

        amount = _number(ctx.get("amount"))
        if amount is not None and not ap.amount_min <= amount <= ap.amount_max:
            indicators.append("amount_out_of_bounds")

        duration = _number(ctx.get("duration"))
        if duration is not None and not ap.duration_min <= duration <= ap.duration_max:
            indicators.append("duration_out_of_bounds")

        content = ctx.get("content")
        if isinstance(content, str) and not (
            ap.content_min_length <= len(content) <= ap.content_max_length
        ):
            indicators.append("content_length_out_of_bounds")

        if event.kind and event.category:
            # event_log already holds this event; count only earlier ones
            history = self.store.count_kind_category(event.kind, event.category) - 1
            if history < ap.rare_combination_max_occurrences:
                indicators.append("rare_combination")

        for start_key, end_key in CONFLICTING_PAIRS:
            start, end = parse_timestamp(ctx.get(start_key)), parse_timestamp(ctx.get(end_key))
            if start is not None and end is not None and start > end:
                indicators.append("conflicting_fields")
                break
        return indicators

    def check_edge_case(self, event: Event) -> AnomalyFinding | None:
        ap = self.policy.anomaly
        indicators = self.edge_case_indicators(event)
        if len(indicators) < ap.edge_case_min_indicators:
            return None
        high = len(indicators) >= ap.edge_case_high_indicators
        return AnomalyFinding(
            type=AnomalyType.EDGE_CASE,
            severity=Severity.HIGH if high else Severity.MEDIUM,
            confidence=min(1.0, len(indicators) / 4),
            reason="edge_case: " + ", ".join(indicators),
            requires_human=high,
            details={"indicators": indicators},
        )

    def context_indicators(self, event: Event) -> list[str]:
        ap = self.policy.anomaly
        ctx = event.context
        indicators = []

        if ctx.get("business_hours_only") or ap.enforce_business_hours:
            hour = event.timestamp.hour
            if hour < ap.business_hours_start or hour > ap.business_hours_end:
                indicators.append("off_hours")

        actor = ctx.get("user_id") or ctx.get("customer_id")
        actor = str(actor) if actor is not None else None
        source_ip = ctx.get("source_ip") or ctx.get("ip_address")
        now = utc_now()

        window = now - timedelta(minutes=ap.frequency_window_minutes)
        if self.store.count_recent_events(actor, source_ip, window) > ap.frequency_limit:
            indicators.append("high_frequency")

        attempts = _number(ctx.get("attempt_count"))
        if (attempts is not None and attempts > ap.behavior_max_attempts) or (
            actor is not None
            and self.store.distinct_kinds_since(actor, window) >= ap.behavior_distinct_kinds
        ):
            indicators.append("unusual_behavior")

        system_window = now - timedelta(minutes=ap.system_window_minutes)
        if self.store.count_anomalies_since(system_window) > ap.system_recent_anomalies:
            indicators.append("system_under_stress")
        return indicators

    def check_unusual_context(self, event: Event) -> AnomalyFinding | None:
        indicators = self.context_indicators(event)
        if len(indicators) < self.policy.anomaly.context_min_indicators:
            return None
        high = len(indicators) >= 3
        return AnomalyFinding(
            type=AnomalyType.UNUSUAL_CONTEXT,
            severity=Severity.HIGH if high else Severity.MEDIUM,
            confidence=min(1.0, len(indicators) / 4),
            reason="unusual_context: " + ", ".join(indicators),
            requires_human=high,
            details={"indicators": indicators},
        )

    @staticmethod
    def security_matches(event: Event) -> list[str]:
        fields = [event.kind, event.category, event.action, event.context]
        found = []
        for text in iter_strings(fields):
            for threat, patterns in SECURITY_PATTERNS.items():
                if threat not in found and any(p.search(text) for p in patterns):
                    found.append(threat)
        return found

    def check_security(self, event: Event) -> AnomalyFinding | None:
        threats = self.security_matches(event)
        if not threats:
            return None
        return AnomalyFinding(
            type=AnomalyType.SECURITY_THREAT,
            severity=Severity.CRITICAL,
            confidence=0.95,
            reason="security_threat: " + ", ".join(threats),
            requires_human=True,
            requires_immediate=True,
            details={"threats": threats},
        )

    def check_data_quality(self, event: Event) -> AnomalyFinding | None:
        issues = list(event.quality_issues)
        missing = []
        for name in self.policy.anomaly.required_fields:
            value = getattr(event, name) if name in _EVENT_FIELDS else event.context.get(name)
            if value is None or value == "":
                missing.append(name)
        if missing and "missing_required_fields" not in issues:
            issues.append("missing_required_fields")
        if not issues:
            return None
        return AnomalyFinding(
            type=AnomalyType.DATA_QUALITY,
            severity=Severity.LOW,
            confidence=0.9,
            reason="data_quality: " + ", ".join(sorted(issues)),
            details={"issues": sorted(issues), "missing": missing},
        )

    # ------------------------------------------------------------------
    # Combine, store, escalate
    # ------------------------------------------------------------------

    @staticmethod
    def combine(
        findings: list[AnomalyFinding], event: Event, reasons: list[str] | None = None
    ) -> Anomaly:
        severity = max((f.severity for f in findings), key=lambda s: s.rank)
        confidence = mean(f.confidence for f in findings)
        types: list[AnomalyType] = []
        for finding in findings:
            if finding.type not in types:
                types.append(finding.type)

        return Anomaly(
            types=types,
            severity=severity,
            confidence=confidence,
            risk_level=risk_level(severity, confidence),
            reasons=list(reasons or []) + [f.reason for f in findings],
            event_snapshot=event.snapshot(),
            requires_human=(
                any(f.requires_human for f in findings)
                or severity == Severity.CRITICAL
                or len(findings) >= 3
            ),
            requires_immediate=any(f.requires_immediate for f in findings),
        )

    def record(self, anomaly: Anomaly) -> Anomaly:
        """
        Store the anomaly and escalate it when severe enough.

        Side Effects:
            - Inserts an anomalies row (fire-and-forget)
            - Emits anomalyDetected, and for escalations anomalyEscalated
        """
        anomaly.escalated = anomaly.severity in ESCALATION_SEVERITIES
        write_quietly("anomaly", self.store.insert_anomaly, anomaly)
        counter("anomaly.detected")
        self.signals.emit(
            SignalType.ANOMALY_DETECTED,
            anomaly_id=anomaly.id,
            severity=anomaly.severity.value,
            types=[t.value for t in anomaly.types],
        )
        if anomaly.escalated:
            self.escalate(anomaly)
        return anomaly

    def escalate(self, anomaly: Anomaly) -> None:
        notified = False
        try:
            self.notifier.notify(anomaly)
            notified = True
        except Exception as e:
            logger.error("Notifier failed for anomaly %s: %s", anomaly.id, e)

        write_quietly(
            "anomaly escalation",
            self.store.insert_escalation,
            anomaly.id,
            anomaly.severity.value,
            notified,
        )
        counter("anomaly.escalated")
        log_event(
            "anomaly.escalated",
            anomaly_id=anomaly.id,
            severity=anomaly.severity.value,
            risk_level=anomaly.risk_level.value,
        )
        self.signals.emit(
            SignalType.ANOMALY_ESCALATED,
            anomaly_id=anomaly.id,
            severity=anomaly.severity.value,
            reasons=list(anomaly.reasons),
            notified=notified,
        )
