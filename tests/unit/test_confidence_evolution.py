"""Tests for confidence adjustment, promotion, demotion, decay and forking"""

from __future__ import annotations

from datetime import timedelta

import pytest

from opspilot.learning.evolution import (
    ConfidenceEvolution,
    PatternNotFoundError,
    classify_failure,
    classify_modification_type,
    common_changes,
)
from opspilot.observability.signals import SignalType
from opspilot.storage.models import (
    Event,
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionStatus,
    FailureSeverity,
    Pattern,
    utc_now,
)

EVENT = Event(kind="maintenance", context={"location": "Bay 4"})


@pytest.fixture
def evolution(store, policy, signals):
    return ConfidenceEvolution(store, policy, signals)


def _history(store, pattern, successes=0, failures=0, severity=FailureSeverity.MINOR):
    """Append execution rows and bump counters the way the execution engine does."""
    for success in [True] * successes + [False] * failures:
        store.append_execution(
            ExecutionRecord(
                pattern_id=pattern.id,
                status=ExecutionStatus.SUCCESS if success else ExecutionStatus.FAILURE,
                error=None if success else "controller offline",
                failure_severity=None if success else severity,
            )
        )
        store.record_outcome_stats(pattern.id, success)


def _outcome(pattern, success=True, **kwargs):
    return ExecutionOutcome(pattern=pattern, event=EVENT, success=success, confidence=0.9, **kwargs)


class TestAdjustConfidence:
    def test_success_boost(self, evolution, make_pattern, store):
        pattern = make_pattern(confidence_score=0.8)

        old, new = evolution.adjust_confidence(_outcome(pattern))

        assert (old, new) == (pytest.approx(0.8), pytest.approx(0.85))
        assert store.confidence_history(pattern.id)[-1][2] == "success"

    def test_success_streak_multiplies_boost(self, evolution, make_pattern, store):
        pattern = make_pattern(confidence_score=0.8)
        _history(store, pattern, successes=3)

        _, new = evolution.adjust_confidence(_outcome(pattern))

        assert new == pytest.approx(0.875)
        assert store.confidence_history(pattern.id)[-1][2] == "success_streak"

    def test_modified_success_is_smaller(self, evolution, make_pattern):
        pattern = make_pattern(confidence_score=0.8)
        _, new = evolution.adjust_confidence(_outcome(pattern, human_modified=True))
        assert new == pytest.approx(0.82)

    def test_boost_is_capped(self, evolution, make_pattern):
        pattern = make_pattern(confidence_score=0.98)
        _, new = evolution.adjust_confidence(_outcome(pattern))
        assert new == pytest.approx(0.99)

    @pytest.mark.parametrize(
        "severity,error,expected",
        [
            (FailureSeverity.MINOR, None, 0.75),
            (None, "upstream request timed out", 0.65),
            (FailureSeverity.CRITICAL, None, 0.5),
        ],
    )
    def test_failure_penalty_by_severity(self, evolution, make_pattern, severity, error, expected):
        pattern = make_pattern(confidence_score=0.8)
        outcome = _outcome(pattern, success=False, failure_severity=severity, error=error)

        _, new = evolution.adjust_confidence(outcome)

        assert new == pytest.approx(expected)

    def test_repeat_failures_double_the_penalty(self, evolution, make_pattern, store):
        pattern = make_pattern(confidence_score=0.8)
        _history(store, pattern, failures=4)

        outcome = _outcome(pattern, success=False, failure_severity=FailureSeverity.MINOR)
        _, new = evolution.adjust_confidence(outcome)

        assert new == pytest.approx(0.7)
        assert store.confidence_history(pattern.id)[-1][2] == "failure_minor_repeated"

    def test_missing_pattern(self, evolution):
        ghost = Pattern(decision_type="x", trigger_signature="x", logic={"type": "passthrough"})
        with pytest.raises(PatternNotFoundError):
            evolution.adjust_confidence(_outcome(ghost))


class TestPromotion:
    def test_not_promoted_below_minimum_executions(self, evolution, make_pattern, store):
        pattern = make_pattern(confidence_score=0.99)
        _history(store, pattern, successes=19)

        assert not evolution.check_promotion(pattern.id)
        assert not store.get_pattern(pattern.id).auto_executable

    def test_promoted_after_enough_clean_executions(
        self, evolution, make_pattern, store, received_signals
    ):
        pattern = make_pattern(confidence_score=0.96)
        _history(store, pattern, successes=20)

        assert evolution.check_promotion(pattern.id)
        assert store.get_pattern(pattern.id).auto_executable
        assert SignalType.PATTERN_PROMOTED in [signal for signal, _ in received_signals]

    def test_recent_failure_blocks_promotion(self, evolution, make_pattern, store):
        pattern = make_pattern(confidence_score=0.96)
        _history(store, pattern, successes=24, failures=1)

        assert not evolution.check_promotion(pattern.id)

    def test_on_outcome_promotes(self, evolution, make_pattern, store):
        pattern = make_pattern(confidence_score=0.94)
        _history(store, pattern, successes=20)

        evolution.on_outcome(_outcome(pattern))

        stored = store.get_pattern(pattern.id)
        assert stored.confidence_score == pytest.approx(0.99)
        assert stored.auto_executable


class TestDemotion:
    def test_low_confidence(self, evolution, make_pattern, received_signals):
        pattern = make_pattern(confidence_score=0.7, auto_executable=True)

        assert evolution.check_demotion(pattern.id) == "low_confidence"
        demoted = [p for s, p in received_signals if s == SignalType.PATTERN_DEMOTED]
        assert demoted[0]["reason"] == "low_confidence"

    def test_low_success_rate(self, evolution, make_pattern, store):
        pattern = make_pattern(confidence_score=0.9, auto_executable=True)
        _history(store, pattern, successes=2, failures=3)

        assert evolution.check_demotion(pattern.id) == "low_success_rate"
        assert not store.get_pattern(pattern.id).auto_executable

    def test_critical_failure(self, evolution, make_pattern, store):
        pattern = make_pattern(confidence_score=0.9, auto_executable=True)
        _history(store, pattern, successes=10)

        assert evolution.check_demotion(pattern.id, FailureSeverity.CRITICAL) == "critical_failure"

    def test_healthy_pattern_stays(self, evolution, make_pattern, store):
        pattern = make_pattern(confidence_score=0.97, auto_executable=True)
        _history(store, pattern, successes=10)

        assert evolution.check_demotion(pattern.id) is None
        assert store.get_pattern(pattern.id).auto_executable

    def test_review_sweep(self, evolution, make_pattern):
        weak = make_pattern(confidence_score=0.6, auto_executable=True)
        make_pattern(confidence_score=0.97, auto_executable=True)

        assert evolution.review_auto_executable() == [(weak.id, "low_confidence")]


def test_decay_only_touches_idle_patterns(evolution, make_pattern, store):
    idle_since = utc_now() - timedelta(days=10)
    near_floor = make_pattern(confidence_score=0.505, last_seen=idle_since)
    idle = make_pattern(confidence_score=0.8, last_seen=idle_since)
    below_floor = make_pattern(confidence_score=0.45, last_seen=idle_since)
    fresh = make_pattern(confidence_score=0.8, last_seen=utc_now())

    assert evolution.apply_decay() == 2

    assert store.get_pattern(near_floor.id).confidence_score == pytest.approx(0.5)
    assert store.get_pattern(idle.id).confidence_score == pytest.approx(0.79)
    assert store.get_pattern(below_floor.id).confidence_score == pytest.approx(0.45)
    assert store.get_pattern(fresh.id).confidence_score == pytest.approx(0.8)


class TestForking:
    CHANGES = {"action": {"target": "plumbing"}}

    def test_fork_after_repeated_identical_edits(
        self, evolution, make_pattern, store, received_signals
    ):
        parent = make_pattern(confidence_score=0.8)

        for _ in range(4):
            evolution.on_outcome(_outcome(parent, human_modified=True, modifications=self.CHANGES))
        assert len(store.list_patterns()) == 1

        evolution.on_outcome(_outcome(parent, human_modified=True, modifications=self.CHANGES))

        forks = [p for p in store.list_patterns() if p.parent_pattern_id == parent.id]
        assert len(forks) == 1
        fork = forks[0]
        assert fork.confidence_score == pytest.approx(0.75)
        assert not fork.auto_executable
        assert fork.logic.action.target == "plumbing"
        assert store.get_pattern(parent.id).logic.action.target == "facilities"
        assert store.get_pattern(parent.id).evolution_flagged
        assert SignalType.PATTERN_FORKED in [signal for signal, _ in received_signals]

    def test_identical_fork_is_not_created_twice(self, evolution, make_pattern, store):
        parent = make_pattern()
        for _ in range(7):
            evolution.on_outcome(_outcome(parent, human_modified=True, modifications=self.CHANGES))

        assert len(store.list_patterns()) == 2

    def test_disagreeing_edits_do_not_fork(self, evolution, make_pattern, store):
        parent = make_pattern()
        for target in ["a", "b", "c", "d", "e"]:
            changes = {"action": {"target": target}}
            evolution.on_outcome(_outcome(parent, human_modified=True, modifications=changes))

        assert len(store.list_patterns()) == 1
        assert store.get_pattern(parent.id).evolution_flagged

    def test_batch_evolve_uses_modification_ratio(self, evolution, make_pattern, store):
        parent = make_pattern()
        _history(store, parent, successes=5)
        for _ in range(2):
            store.insert_modification(parent.id, "other", self.CHANGES, True)

        forks = evolution.evolve_patterns()

        assert [f.parent_pattern_id for f in forks] == [parent.id]


def test_common_changes_keeps_agreed_leaves():
    modifications = [
        {"parameters": {"a": 1}},
        {"parameters": {"a": 1, "b": 2}},
        {"parameters": {"a": 1, "b": 3}},
    ]
    assert common_changes(modifications, 0.6) == {"parameters": {"a": 1}}
    assert common_changes([], 0.6) == {}


@pytest.mark.parametrize(
    "error,expected",
    [
        ("CRITICAL: door controller fault", FailureSeverity.CRITICAL),
        ("gateway timeout", FailureSeverity.MAJOR),
        (TimeoutError(), FailureSeverity.MAJOR),
        ("bay already booked", FailureSeverity.MINOR),
        (None, FailureSeverity.MINOR),
    ],
)
def test_classify_failure(error, expected):
    assert classify_failure(error) is expected


@pytest.mark.parametrize(
    "changes,expected",
    [
        ({"steps": []}, "workflow_change"),
        ({"parameters": {"coach": "kim"}}, "parameter_adjustment"),
        ({"conditions": []}, "condition_change"),
        ({"action": {"target": "x"}}, "other"),
        (None, "other"),
    ],
)
def test_classify_modification_type(changes, expected):
    assert classify_modification_type(changes) == expected
