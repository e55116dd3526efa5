"""Access patterns: door entry, authentication and security-gated resources."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from opspilot.matching.modules.base import (
    PatternModule,
    event_text,
    first_keyword_category,
    signature_of,
)
from opspilot.storage.models import Event, ExecutionOutcome, Pattern, parse_timestamp, utc_now

ACCESS_TYPES: dict[str, tuple[str, ...]] = {
    "physical": ("door", "gate", "entrance", "bay"),
    "digital": ("login", "system", "app", "portal"),
    "resource": ("equipment", "facility", "area"),
    "emergency": ("override", "force", "emergency"),
}

SECURITY_LEVELS = ("public", "member", "staff", "admin", "emergency")

SECURITY_WEIGHTS = {
    "user_verification": 0.4,
    "time_restrictions": 0.2,
    "location_context": 0.2,
    "access_history": 0.2,
}

AREA_WORDS = ("north", "south", "east", "west", "main", "annex")
LOCATION_KINDS = ("bay", "door", "gate", "entrance")

HISTORY_WINDOW_DAYS = 30
SUSPICIOUS_ATTEMPTS = 3


def access_time_category(when: datetime) -> str:
    if when.weekday() >= 5:
        return "weekend"
    hour = when.hour
    if 6 <= hour < 9:
        return "morning_rush"
    if 9 <= hour < 17:
        return "business_hours"
    if 17 <= hour < 21:
        return "evening"
    return "after_hours"


def locations_nearby(a: str, b: str) -> bool:
    """Same named area (north wing, annex...) or same kind of entry point."""
    a, b = a.lower(), b.lower()
    if any(area in a and area in b for area in AREA_WORDS):
        return True
    return any(kind in a and kind in b for kind in LOCATION_KINDS)


def security_level(event: Event) -> str:
    ctx = event.context
    if ctx.get("security_level"):
        return str(ctx["security_level"])
    if ctx.get("emergency"):
        return "emergency"
    if ctx.get("admin") or ctx.get("override"):
        return "admin"
    if ctx.get("staff"):
        return "staff"
    if ctx.get("member") or ctx.get("customer_id"):
        return "member"
    return "public"


class AccessPatternModule(PatternModule):
    name = "access"
    min_confidence = 0.7
    handles = frozenset({"access", "authentication", "security", "entry", "unlock"})
    general_keywords = ("unlock", "access", "door", "entry", "scan", "badge")

    def categorize(self, event: Event) -> str:
        return event.context.get("access_type") or first_keyword_category(
            event_text(event), ACCESS_TYPES, "general"
        )

    @staticmethod
    def location_of(event: Event) -> str | None:
        location = event.context.get("location") or event.context.get("door")
        return str(location) if location is not None else None

    @staticmethod
    def actor_of(event: Event) -> str | None:
        actor = event.context.get("user_id") or event.context.get("customer_id")
        return str(actor) if actor is not None else None

    def generate_signature(self, event: Event) -> str:
        return signature_of(
            "access",
            self.categorize(event),
            self.location_of(event),
            event.context.get("method") or "unknown",
            access_time_category(event.timestamp),
        )

    # ------------------------------------------------------------------
    # Semantic
    # ------------------------------------------------------------------

    def semantic_score(self, pattern: Pattern, event: Event) -> float:
        attrs = pattern.logic.attributes
        score = 0.0

        location = self.location_of(event)
        expected_location = attrs.get("location")
        if location and expected_location:
            if location == expected_location:
                score += 0.3
            elif locations_nearby(location, str(expected_location)):
                score += 0.15

        method = event.context.get("method")
        if method and method == attrs.get("method"):
            score += 0.2

        if security_level(event) == attrs.get("security_level", "member"):
            score += 0.3

        score += self._allowed_time_score(attrs.get("time_restrictions"), event.timestamp) * 0.2
        return score

    @staticmethod
    def _allowed_time_score(restrictions: Any, when: datetime) -> float:
        if not isinstance(restrictions, dict):
            return 0.5
        score = 0.0
        if when.hour in restrictions.get("allowed_hours", ()):
            score += 0.5
        if when.weekday() in restrictions.get("allowed_days", ()):
            score += 0.5
        return score

    # ------------------------------------------------------------------
    # Context (security weighted)
    # ------------------------------------------------------------------

    def context_score(self, pattern: Pattern, event: Event) -> float:
        attrs = pattern.logic.attributes
        total = 0.0

        actor = self.actor_of(event)
        if actor is not None:
            allowed = attrs.get("allowed_users") or []
            verification = 0.5 if not allowed else (1.0 if actor in map(str, allowed) else 0.0)
            total += verification * SECURITY_WEIGHTS["user_verification"]

        total += self._time_restriction_score(attrs.get("time_restrictions"), event.timestamp) * (
            SECURITY_WEIGHTS["time_restrictions"]
        )
        total += self._location_score(attrs.get("location_restrictions"), event) * (
            SECURITY_WEIGHTS["location_context"]
        )
        total += self._history_score(pattern, event) * SECURITY_WEIGHTS["access_history"]
        return total

    @staticmethod
    def _time_restriction_score(restrictions: Any, when: datetime) -> float:
        if not isinstance(restrictions, dict):
            return 1.0

        for period in restrictions.get("blackout_periods", ()):
            start = parse_timestamp(period.get("start")) if isinstance(period, dict) else None
            end = parse_timestamp(period.get("end")) if isinstance(period, dict) else None
            if start and end and start <= when <= end:
                return 0.0

        if restrictions.get("business_hours_only"):
            if when.weekday() >= 5:
                return 0.2
            if when.hour < 8 or when.hour > 18:
                return 0.3
        return 1.0

    def _location_score(self, restrictions: Any, event: Event) -> float:
        location = self.location_of(event)
        if not location or not isinstance(restrictions, dict):
            return 0.5
        if "allowed_locations" in restrictions:
            return 1.0 if location in restrictions["allowed_locations"] else 0.0
        if "restricted_locations" in restrictions:
            return 0.0 if location in restrictions["restricted_locations"] else 1.0
        return 0.5

    def _history_score(self, pattern: Pattern, event: Event) -> float:
        """Returning users with a clean record score higher than first-time or noisy ones."""
        actor = self.actor_of(event)
        if actor is None:
            return 0.5
        if self.suspicious_indicators(event):
            return 0.2 if pattern.logic.attributes.get("requires_clean_history") else 0.4

        since = utc_now() - timedelta(days=HISTORY_WINDOW_DAYS)
        prior = self.store.count_recent_events(actor, None, since)
        if event.context.get("first_time_access") or prior <= 1:
            return 0.5
        return 0.8

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    @staticmethod
    def suspicious_indicators(event: Event) -> list[str]:
        ctx = event.context
        indicators = []
        try:
            if int(ctx.get("attempt_count") or 0) > SUSPICIOUS_ATTEMPTS:
                indicators.append("multiple_attempts")
        except (TypeError, ValueError):
            indicators.append("invalid_attempt_count")
        if ctx.get("device_id") == "unknown" or ctx.get("unknown_device"):
            indicators.append("unknown_device")
        return indicators

    def key_attributes(self, event: Event) -> dict[str, Any]:
        ctx = event.context
        return {
            "access_type": self.categorize(event),
            "location": self.location_of(event),
            "method": ctx.get("method", "unknown"),
            "security_level": security_level(event),
            "time_category": access_time_category(event.timestamp),
            "device_id": ctx.get("device_id"),
        }

    def extract_conditions(self, event: Event, outcome: ExecutionOutcome) -> dict[str, Any]:
        conditions: dict[str, Any] = {"security_level": security_level(event)}
        if indicators := self.suspicious_indicators(event):
            conditions["suspicious_indicators"] = indicators
        return conditions
