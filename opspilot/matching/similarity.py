"""
Similarity Engine

Pure scoring functions shared by every domain module. A match score is

    exact + context + semantic + temporal + history

where each component is a [0, 1] score times its policy weight. The sum is
multiplied by the pattern's own confidence_score and clamped to [0, 1].
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from rapidfuzz.distance import Levenshtein

from opspilot.runtime.policy import SimilarityPolicy
from opspilot.storage.models import MatchBreakdown, Pattern, TemporalProfile, clamp


def string_similarity(a: str | None, b: str | None) -> float:
    """1 - levenshtein(a, b) / max(len(a), len(b)); identical strings score 1.0."""
    a = a or ""
    b = b or ""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return float(Levenshtein.normalized_similarity(a, b))


def context_overlap(pattern_context: Mapping[str, Any], event_context: Mapping[str, Any]) -> float:
    """Fraction of the pattern's context keys whose value the event repeats exactly."""
    if not pattern_context:
        return 0.0
    matches = sum(
        1
        for key, value in pattern_context.items()
        if key in event_context and event_context[key] == value
    )
    return matches / len(pattern_context)


def temporal_alignment(profile: TemporalProfile | None, when: datetime, default: float = 0.5) -> float:
    """Half credit for a typical hour, half for a typical weekday (Monday=0)."""
    if profile is None:
        return default
    score = 0.0
    if when.hour in profile.typical_hours:
        score += 0.5
    if when.weekday() in profile.typical_days:
        score += 0.5
    return score


def outcome_history(pattern: Pattern) -> float:
    return pattern.success_rate


def numeric_closeness(a: Any, b: Any) -> float | None:
    """1 - |a - b| / max(|a|, |b|), or None when either side is not numeric."""
    try:
        x, y = float(a), float(b)
    except (TypeError, ValueError):
        return None
    largest = max(abs(x), abs(y))
    if largest == 0:
        return 1.0
    return clamp(1 - abs(x - y) / largest)


def jaccard(a: Iterable[Any], b: Iterable[Any]) -> float:
    left, right = set(a), set(b)
    if not left and not right:
        return 0.0
    return len(left & right) / len(left | right)


def combine(
    pattern: Pattern,
    signature: str,
    *,
    context_score: float,
    semantic_score: float,
    temporal_score: float,
    weights: SimilarityPolicy,
) -> tuple[float, MatchBreakdown]:
    """
    Weight the component scores for one pattern/event pair.

    Returns:
        (confidence, breakdown) where confidence is already multiplied by the
        pattern's confidence_score and clamped
    """
    if pattern.trigger_signature == signature:
        exact = weights.exact_weight
    else:
        exact = (
            string_similarity(pattern.trigger_signature, signature)
            * weights.exact_weight
            * weights.partial_signature_factor
        )

    breakdown = MatchBreakdown(
        exact=exact,
        context=clamp(context_score) * weights.context_weight,
        semantic=clamp(semantic_score) * weights.semantic_weight,
        temporal=clamp(temporal_score) * weights.temporal_weight,
        history=outcome_history(pattern) * weights.history_weight,
    )
    return clamp(breakdown.total * pattern.confidence_score), breakdown
