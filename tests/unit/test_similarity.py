"""Tests for the pure scoring functions in opspilot.matching.similarity"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from opspilot.matching.similarity import (
    combine,
    context_overlap,
    jaccard,
    numeric_closeness,
    string_similarity,
    temporal_alignment,
)
from opspilot.runtime.policy import SimilarityPolicy
from opspilot.storage.models import Pattern, TemporalProfile

MONDAY_9AM = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


def _pattern(**overrides):
    fields = {
        "decision_type": "booking",
        "trigger_signature": "booking:standard:bay 3",
        "logic": {"type": "passthrough", "payload": {}},
        "confidence_score": 0.5,
    }
    fields.update(overrides)
    return Pattern(**fields)


class TestStringSimilarity:
    def test_identical_strings_score_one(self):
        assert string_similarity("booking:court", "booking:court") == 1.0

    def test_empty_side_scores_zero(self):
        assert string_similarity("", "booking") == 0.0
        assert string_similarity(None, "booking") == 0.0

    def test_levenshtein_ratio(self):
        # distance 3 over max length 7
        assert string_similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)


class TestContextOverlap:
    def test_fraction_of_pattern_keys_repeated(self):
        assert context_overlap({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4}) == 0.5

    def test_empty_pattern_context_scores_zero(self):
        assert context_overlap({}, {"a": 1}) == 0.0


class TestTemporalAlignment:
    def test_no_profile_uses_default(self):
        assert temporal_alignment(None, MONDAY_9AM, default=0.5) == 0.5

    def test_hour_and_weekday_each_half_credit(self):
        profile = TemporalProfile(typical_hours=[9], typical_days=[0])
        assert temporal_alignment(profile, MONDAY_9AM) == 1.0

        hour_only = TemporalProfile(typical_hours=[9], typical_days=[5, 6])
        assert temporal_alignment(hour_only, MONDAY_9AM) == 0.5

        neither = TemporalProfile(typical_hours=[22], typical_days=[6])
        assert temporal_alignment(neither, MONDAY_9AM) == 0.0


def test_numeric_closeness():
    assert numeric_closeness(100, 80) == pytest.approx(0.8)
    assert numeric_closeness(0, 0) == 1.0
    assert numeric_closeness("n/a", 3) is None


def test_jaccard():
    assert jaccard(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)
    assert jaccard([], []) == 0.0


class TestCombine:
    def test_exact_signature_weighted_sum_times_confidence(self):
        pattern = _pattern(confidence_score=0.5)
        confidence, breakdown = combine(
            pattern,
            "booking:standard:bay 3",
            context_score=1.0,
            semantic_score=0.5,
            temporal_score=0.5,
            weights=SimilarityPolicy(),
        )

        assert breakdown.exact == 1.0
        assert breakdown.context == pytest.approx(0.3)
        assert breakdown.semantic == pytest.approx(0.1)
        assert breakdown.temporal == pytest.approx(0.05)
        assert breakdown.history == 0.0  # never executed
        assert confidence == pytest.approx(1.45 * 0.5)

    def test_partial_signature_is_discounted(self):
        pattern = _pattern(confidence_score=1.0)
        _, breakdown = combine(
            pattern,
            "booking:standard:bay 4",
            context_score=0.0,
            semantic_score=0.0,
            temporal_score=0.0,
            weights=SimilarityPolicy(),
        )
        assert 0.0 < breakdown.exact < 0.5

    def test_result_is_clamped(self):
        pattern = _pattern(confidence_score=1.0, execution_count=10, success_count=10)
        confidence, _ = combine(
            pattern,
            "booking:standard:bay 3",
            context_score=1.0,
            semantic_score=1.0,
            temporal_score=1.0,
            weights=SimilarityPolicy(),
        )
        assert confidence == 1.0
