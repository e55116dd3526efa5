"""Booking patterns: reservations, schedules and appointments."""

from __future__ import annotations

from typing import Any

from opspilot.matching.modules.base import (
    PatternModule,
    event_text,
    first_keyword_category,
    signature_of,
)
from opspilot.matching.similarity import numeric_closeness
from opspilot.storage.models import Event, ExecutionOutcome, Pattern, parse_timestamp

BOOKING_TYPES: dict[str, tuple[str, ...]] = {
    "standard": ("regular", "single", "normal"),
    "recurring": ("weekly", "monthly", "series"),
    "group": ("team", "party", "event"),
    "priority": ("vip", "premium", "urgent"),
}

RESOURCE_KINDS = ("bay", "room", "court", "table")


def time_block(value: Any) -> str:
    """Bucket a slot start into early_morning / morning / afternoon / evening / night."""
    when = parse_timestamp(value)
    if when is None:
        return ""
    hour = when.hour
    if hour < 6:
        return "early_morning"
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    if hour < 21:
        return "evening"
    return "night"


def resources_similar(a: str, b: str) -> bool:
    a, b = a.lower(), b.lower()
    return any(kind in a and kind in b for kind in RESOURCE_KINDS)


class BookingPatternModule(PatternModule):
    name = "booking"
    min_confidence = 0.6
    handles = frozenset({"booking", "reservation", "schedule", "appointment"})
    general_keywords = ("book", "reserve", "schedule", "slot", "bay")

    def categorize(self, event: Event) -> str:
        return event.context.get("booking_type") or first_keyword_category(
            event_text(event), BOOKING_TYPES, "standard"
        )

    @staticmethod
    def resource_of(event: Event) -> str | None:
        resource = event.context.get("resource") or event.context.get("bay")
        return str(resource) if resource is not None else None

    def generate_signature(self, event: Event) -> str:
        return signature_of(
            "booking",
            self.categorize(event),
            self.resource_of(event),
            time_block(event.context.get("time_slot")),
            event.action,
        )

    def semantic_score(self, pattern: Pattern, event: Event) -> float:
        attrs = pattern.logic.attributes
        ctx = event.context
        score = 0.0

        resource = self.resource_of(event)
        expected_resource = attrs.get("resource")
        if resource and expected_resource:
            if resource == expected_resource:
                score += 0.3
            elif resources_similar(resource, str(expected_resource)):
                score += 0.15

        if ctx.get("duration") and attrs.get("typical_duration"):
            closeness = numeric_closeness(ctx["duration"], attrs["typical_duration"])
            score += (closeness or 0.0) * 0.2

        if ctx.get("participants") and attrs.get("typical_participants"):
            closeness = numeric_closeness(ctx["participants"], attrs["typical_participants"])
            score += (closeness or 0.0) * 0.2

        if attrs.get("booking_type") == self.categorize(event):
            score += 0.3
        return score

    def key_attributes(self, event: Event) -> dict[str, Any]:
        ctx = event.context
        return {
            "booking_type": self.categorize(event),
            "resource": self.resource_of(event),
            "time_slot": ctx.get("time_slot"),
            "duration": ctx.get("duration"),
            "participants": ctx.get("participants", 1),
            "recurring": bool(ctx.get("recurring", False)),
            "priority": ctx.get("priority", "normal"),
        }

    def extract_conditions(self, event: Event, outcome: ExecutionOutcome) -> dict[str, Any]:
        ctx = event.context
        conditions = {
            "prerequisites": ctx.get("prerequisites", []),
            "special_requirements": ctx.get("requirements", []),
        }
        return {key: value for key, value in conditions.items() if value}
