"""Tests for confidence-tier routing"""

from __future__ import annotations

import pytest

from opspilot.automation.router import (
    LOW_CONFIDENCE,
    NO_MATCHING_PATTERN,
    AutomationRouter,
    Tier,
)
from opspilot.observability.telemetry import get_counter
from opspilot.runtime.policy import RoutingPolicy
from opspilot.storage.models import Event, Match, Pattern


def _match(confidence: float, auto_executable: bool = False) -> Match:
    pattern = Pattern(
        decision_type="maintenance",
        trigger_signature="maintenance",
        logic={"type": "passthrough"},
        confidence_score=confidence,
        auto_executable=auto_executable,
    )
    return Match(pattern=pattern, event=Event(kind="maintenance"), confidence=confidence, source="store")


@pytest.fixture
def router():
    return AutomationRouter(RoutingPolicy())


class TestSelectTier:
    def test_high_confidence_auto_executable_executes(self, router):
        assert router.select_tier(_match(0.96, auto_executable=True)).tier is Tier.EXECUTE

    def test_high_confidence_without_auto_flag_suggests(self, router):
        assert router.select_tier(_match(0.96, auto_executable=False)).tier is Tier.SUGGEST

    @pytest.mark.parametrize(
        "confidence,expected",
        [
            (0.95, Tier.SUGGEST),
            (0.80, Tier.SUGGEST),
            (0.75, Tier.SUGGEST),
            (0.74, Tier.APPROVAL),
            (0.55, Tier.APPROVAL),
            (0.50, Tier.APPROVAL),
            (0.49, Tier.ANOMALY),
        ],
    )
    def test_thresholds_are_inclusive(self, router, confidence, expected):
        assert router.select_tier(_match(confidence)).tier is expected

    def test_exact_auto_threshold_executes(self, router):
        assert router.select_tier(_match(0.95, auto_executable=True)).tier is Tier.EXECUTE

    def test_low_confidence_reason(self, router):
        decision = router.select_tier(_match(0.2))
        assert decision.tier is Tier.ANOMALY
        assert decision.reason == LOW_CONFIDENCE
        assert decision.match is not None

    def test_no_match(self, router):
        decision = router.select_tier(None)
        assert decision.tier is Tier.ANOMALY
        assert decision.reason == NO_MATCHING_PATTERN
        assert decision.match is None


class TestRoute:
    def test_routes_on_best_match(self, router):
        decision = router.route([_match(0.55), _match(0.82), _match(0.3)])
        assert decision.tier is Tier.SUGGEST
        assert decision.match.confidence == 0.82

    def test_empty_match_list_is_anomaly(self, router):
        assert router.route([]).tier is Tier.ANOMALY

    def test_tier_counters(self, router):
        router.route([_match(0.55)])
        router.route([])
        assert get_counter("router.tier.approval") == 1
        assert get_counter("router.tier.anomaly") == 1


def test_custom_thresholds():
    router = AutomationRouter(
        RoutingPolicy(auto_execute_threshold=0.9, suggest_threshold=0.6, approval_threshold=0.3)
    )
    assert router.select_tier(_match(0.91, auto_executable=True)).tier is Tier.EXECUTE
    assert router.select_tier(_match(0.65)).tier is Tier.SUGGEST
    assert router.select_tier(_match(0.35)).tier is Tier.APPROVAL
