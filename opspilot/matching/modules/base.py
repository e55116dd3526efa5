"""
Base class for domain pattern modules.

A module owns three things for its domain: which event kinds it handles, how
an event is reduced to a trigger signature, and how semantic/context closeness
is scored. Weighting and the confidence multiplier are shared (see
opspilot.matching.similarity).
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from opspilot.config import PATTERN_RECENCY_DAYS, SEARCH_MODULE_LIMIT
from opspilot.matching import similarity
from opspilot.observability.logging import get_logger
from opspilot.runtime.policy import Policy
from opspilot.storage.models import Event, ExecutionOutcome, Match, Pattern, utc_now
from opspilot.storage.repository import PatternStore

logger = get_logger(__name__)


def signature_of(*components: Any) -> str:
    """Colon-join the non-empty components, lowercased."""
    return ":".join(str(c) for c in components if c not in (None, "")).lower()


def _string_values(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        return [s for item in value.values() for s in _string_values(item)]
    if isinstance(value, (list, tuple)):
        return [s for item in value for s in _string_values(item)]
    return []


def event_text(event: Event) -> str:
    """Lowercased string values of the event (not its keys), for keyword categorization."""
    parts = [event.kind, event.category or "", event.action or ""]
    parts.extend(_string_values(event.context))
    return " ".join(parts).lower()


def first_keyword_category(text: str, categories: dict[str, tuple[str, ...]], default: str) -> str:
    for category, keywords in categories.items():
        if any(keyword in text for keyword in keywords):
            return category
    return default


class PatternModule:
    """Pluggable domain module; subclasses override the scoring hooks."""

    name: str = "general"
    min_confidence: float = 0.5
    handles: frozenset[str] = frozenset()
    # Keywords that let a module claim events classified as "general"
    general_keywords: tuple[str, ...] = ()
    cross_domain_learning: bool = True

    def __init__(self, store: PatternStore, policy: Policy) -> None:
        self.store = store
        self.policy = policy

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def can_handle(self, kind: str, event: Event | None = None) -> bool:
        if kind in self.handles:
            return True
        if kind == "general" and event is not None and self.general_keywords:
            text = event_text(event)
            return any(keyword in text for keyword in self.general_keywords)
        return False

    def generate_signature(self, event: Event) -> str:
        return signature_of(self.name, event.kind, event.category, event.action)

    def semantic_score(self, pattern: Pattern, event: Event) -> float:
        return self.policy.similarity.default_semantic_score

    def context_score(self, pattern: Pattern, event: Event) -> float:
        return similarity.context_overlap(pattern.logic.context, event.context)

    def temporal_score(self, pattern: Pattern, event: Event) -> float:
        return similarity.temporal_alignment(
            pattern.logic.temporal_context,
            event.timestamp,
            default=self.policy.similarity.default_temporal_score,
        )

    def key_attributes(self, event: Event) -> dict[str, Any]:
        return {}

    def extract_conditions(self, event: Event, outcome: ExecutionOutcome) -> dict[str, Any]:
        return {}

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def score(self, pattern: Pattern, event: Event, signature: str | None = None) -> Match:
        signature = signature if signature is not None else self.generate_signature(event)
        confidence, breakdown = similarity.combine(
            pattern,
            signature,
            context_score=self.context_score(pattern, event),
            semantic_score=self.semantic_score(pattern, event),
            temporal_score=self.temporal_score(pattern, event),
            weights=self.policy.similarity,
        )
        return Match(
            pattern=pattern,
            event=event,
            confidence=confidence,
            source=self.name,
            breakdown=breakdown,
        )

    def find_matches(self, event: Event) -> list[Match]:
        """
        Score this module's candidate patterns against the event.

        Only candidates seen within the recency window are considered, and
        matches below the module's minimum confidence are dropped.
        """
        signature = self.generate_signature(event)
        since = utc_now() - timedelta(days=PATTERN_RECENCY_DAYS)
        candidates = self.store.find_module_candidates(
            self.name, signature, since=since, limit=SEARCH_MODULE_LIMIT
        )

        matches = [self.score(pattern, event, signature) for pattern in candidates]
        matches = [m for m in matches if m.confidence >= self.min_confidence]
        matches.sort(key=lambda m: m.confidence, reverse=True)
        logger.debug(
            "Module %s: %d/%d candidates above %.2f for %s",
            self.name,
            len(matches),
            len(candidates),
            self.min_confidence,
            signature,
        )
        return matches

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def extract_insight(self, event: Event, outcome: ExecutionOutcome) -> dict[str, Any]:
        return {
            "trigger": {"kind": event.kind, "key_attributes": self.key_attributes(event)},
            "logic_type": outcome.pattern.logic.type,
            "conditions": self.extract_conditions(event, outcome),
            "outcome": {"success": outcome.success},
        }

    @staticmethod
    def applicability(insight: dict[str, Any]) -> float:
        score = 0.5
        if insight.get("conditions"):
            score += 0.2
        if insight.get("outcome", {}).get("success"):
            score += 0.3
        return min(1.0, score)

    def learn_from_outcome(self, outcome: ExecutionOutcome) -> None:
        """
        Record a reusable insight after a successful execution.

        Side Effects:
            - Inserts a cross_domain_learnings row
        """
        if not (self.cross_domain_learning and outcome.success):
            return
        insight = self.extract_insight(outcome.event, outcome)
        self.store.insert_learning(
            self.name, outcome.pattern.id, insight, self.applicability(insight)
        )
