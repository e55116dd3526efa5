"""Decision patterns: general business and operational decisions."""

from __future__ import annotations

from typing import Any

from opspilot.matching.modules.base import (
    PatternModule,
    event_text,
    first_keyword_category,
    signature_of,
)
from opspilot.matching.similarity import jaccard, string_similarity
from opspilot.storage.models import Event, ExecutionOutcome, Pattern

DECISION_CATEGORIES: dict[str, tuple[str, ...]] = {
    "operational": ("schedule", "assign", "prioritize", "route"),
    "customer": ("approve", "deny", "escalate", "resolve"),
    "resource": ("allocate", "reserve", "release", "optimize"),
    "financial": ("charge", "refund", "discount", "invoice"),
}

CONTEXT_WEIGHTS = {
    "customer_history": 0.3,
    "resource_availability": 0.2,
    "business_rules": 0.4,
    "temporal_factors": 0.1,
}

# Score for a known customer when no customer profile service is wired in
KNOWN_CUSTOMER_SCORE = 0.7

BUSINESS_HOURS = range(9, 17)


def resource_coverage(available: list[Any], required: list[Any]) -> float:
    """Fraction of required {type, quantity} entries that the available list satisfies."""
    if not required:
        return 1.0
    satisfied = 0
    for req in required:
        if not isinstance(req, dict):
            continue
        for avail in available:
            if (
                isinstance(avail, dict)
                and avail.get("type") == req.get("type")
                and (avail.get("quantity") or 0) >= (req.get("quantity") or 0)
            ):
                satisfied += 1
                break
    return satisfied / len(required)


def rule_coverage(active: list[Any], applicable: list[Any]) -> float:
    if not applicable:
        return 1.0
    return sum(1 for rule in applicable if rule in active) / len(applicable)


class DecisionPatternModule(PatternModule):
    name = "decision"
    min_confidence = 0.5
    handles = frozenset({"decision", "general", "business", ""})

    def categorize(self, event: Event) -> str:
        return first_keyword_category(event_text(event), DECISION_CATEGORIES, "general")

    def generate_signature(self, event: Event) -> str:
        return signature_of(
            "decision",
            event.context.get("decision_type") or event.kind or "general",
            event.category or self.categorize(event),
            event.context.get("subject"),
            event.action,
        )

    def context_score(self, pattern: Pattern, event: Event) -> float:
        expected = pattern.logic.context
        ctx = event.context
        if not expected or not ctx:
            return 0.0

        total = 0.0
        if ctx.get("customer_id") and expected.get("customer_type"):
            total += KNOWN_CUSTOMER_SCORE * CONTEXT_WEIGHTS["customer_history"]
        if isinstance(ctx.get("resources"), list) and isinstance(
            expected.get("resource_requirements"), list
        ):
            total += (
                resource_coverage(ctx["resources"], expected["resource_requirements"])
                * CONTEXT_WEIGHTS["resource_availability"]
            )
        if isinstance(ctx.get("rules"), list) and isinstance(expected.get("applicable_rules"), list):
            total += (
                rule_coverage(ctx["rules"], expected["applicable_rules"])
                * CONTEXT_WEIGHTS["business_rules"]
            )
        total += self._temporal_preference(pattern, event) * CONTEXT_WEIGHTS["temporal_factors"]
        return total

    @staticmethod
    def _temporal_preference(pattern: Pattern, event: Event) -> float:
        prefs = pattern.logic.attributes.get("temporal_preferences")
        if not isinstance(prefs, dict):
            return 0.5

        hour = event.timestamp.hour
        weekend = event.timestamp.weekday() >= 5
        score = 0.0
        if not prefs.get("business_hours_only") or (hour in BUSINESS_HOURS and not weekend):
            score += 0.5
        peak_hours = prefs.get("peak_hours")
        if not peak_hours or hour in peak_hours:
            score += 0.5
        return score

    def semantic_score(self, pattern: Pattern, event: Event) -> float:
        attrs = pattern.logic.attributes
        ctx = event.context
        score = 0.0

        if ctx.get("decision_type") and ctx.get("decision_type") == attrs.get("decision_type"):
            score += 0.4
        if ctx.get("desired_outcome") and attrs.get("typical_outcome"):
            score += (
                string_similarity(str(ctx["desired_outcome"]), str(attrs["typical_outcome"])) * 0.3
            )
        if isinstance(ctx.get("stakeholders"), list) and isinstance(attrs.get("stakeholders"), list):
            score += jaccard(ctx["stakeholders"], attrs["stakeholders"]) * 0.3
        return score

    def key_attributes(self, event: Event) -> dict[str, Any]:
        ctx = event.context
        return {
            "decision_type": ctx.get("decision_type") or event.kind,
            "category": self.categorize(event),
            "stakeholders": ctx.get("stakeholders", []),
            "impact": ctx.get("impact", "medium"),
            "urgency": "urgent" if event.urgent else ctx.get("urgency", "normal"),
        }

    def extract_conditions(self, event: Event, outcome: ExecutionOutcome) -> dict[str, Any]:
        ctx = event.context
        return {
            key: ctx[key]
            for key in ("preconditions", "constraints", "dependencies")
            if ctx.get(key)
        }
