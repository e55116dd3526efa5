"""
Tests for the suggestion countdown

The property under test throughout: a suggestion executes at most once, no
matter how approve / reject / modify and the timer interleave.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import pytest

from opspilot.automation.results import EXECUTED, NOT_FOUND, REJECTED, SUGGESTION
from opspilot.observability.signals import SignalType
from opspilot.observability.telemetry import get_counter
from opspilot.storage.models import Event, Match, PatternValidationError

LONG_AGO = datetime(2000, 1, 1, tzinfo=UTC)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def match(make_pattern):
    pattern = make_pattern(confidence_score=0.8)
    return Match(
        pattern=pattern,
        event=Event(kind="maintenance", context={"location": "Bay 2"}),
        confidence=0.8,
        source="store",
    )


@pytest.fixture
def suggestions(engine):
    return engine.suggestions


class TestCreate:
    def test_default_countdown(self, suggestions, match, received_signals):
        result = suggestions.create(match)

        assert result.type == SUGGESTION
        assert result.timeout_ms == 30000
        assert result.confidence == 0.8
        assert result.pattern_id == match.pattern.id
        assert suggestions.get(result.id) is not None
        assert len(suggestions) == 1
        assert SignalType.SUGGESTION_CREATED in [signal for signal, _ in received_signals]

    def test_as_dict_drops_handles(self, suggestions, match):
        data = suggestions.create(match).as_dict()
        assert data["type"] == SUGGESTION
        assert "approve" not in data


class TestHumanHandles:
    def test_approve_executes_once(self, suggestions, match, store, action_executor):
        result = suggestions.create(match)

        executed = result.approve(user_id="front-desk")

        assert executed.type == EXECUTED
        assert executed.success
        assert executed.was_approved
        assert not executed.was_auto_executed
        assert len(action_executor.calls) == 1
        assert len(store.executions_for_reference(result.id)) == 1
        assert suggestions.get(result.id) is None

    def test_reject_penalizes_without_executing(self, suggestions, match, store, action_executor):
        result = suggestions.create(match)

        rejected = result.reject(reason="bay already reopened", user_id="front-desk")

        assert rejected.type == REJECTED
        assert rejected.reason == "bay already reopened"
        assert action_executor.calls == []
        assert store.executions_for_reference(result.id) == []
        assert store.get_pattern(match.pattern.id).confidence_score == pytest.approx(0.78)

    def test_modify_runs_changed_copy_and_keeps_original(
        self, suggestions, match, store, action_executor
    ):
        result = suggestions.create(match)

        executed = result.modify({"action": {"target": "cleaning-crew"}}, user_id="front-desk")

        assert executed.success
        assert executed.was_modified
        assert action_executor.calls[0][0].target == "cleaning-crew"
        stored = store.get_pattern(match.pattern.id)
        assert stored.logic.action.target == "facilities"
        assert store.count_modifications(match.pattern.id, LONG_AGO) == 1

    def test_invalid_modification_leaves_suggestion_pending(self, suggestions, match):
        result = suggestions.create(match)

        with pytest.raises(PatternValidationError):
            result.modify({"action": {"unknown_field": 1}})

        assert suggestions.get(result.id) is not None

    def test_second_handle_call_is_not_found(self, suggestions, match):
        result = suggestions.create(match)
        result.reject()

        assert result.approve().type == NOT_FOUND
        assert result.modify({"action": {"target": "x"}}).type == NOT_FOUND
        assert get_counter("suggestion.not_found") == 2


class TestTimeout:
    def test_timer_executes_automatically(self, suggestions, match, store):
        result = suggestions.create(match, timeout_ms=50)

        assert _wait_for(lambda: len(store.executions_for_reference(result.id)) == 1)
        record = store.executions_for_reference(result.id)[0]
        assert record.was_auto_executed
        assert suggestions.get(result.id) is None
        assert get_counter("suggestion.timeout_fired") == 1

    def test_approve_after_timeout_is_not_found(self, suggestions, match, store):
        result = suggestions.create(match)

        fired = suggestions.fire(result.id)
        late = result.approve(user_id="front-desk")

        assert fired.type == EXECUTED
        assert fired.was_auto_executed
        assert late.type == NOT_FOUND
        assert len(store.executions_for_reference(result.id)) == 1

    def test_timeout_failure_is_not_raised(self, store, policy, signals, match):
        from opspilot.automation.executor import ExecutionEngine
        from opspilot.automation.suggestions import SuggestionTimer

        class Refusing:
            def execute(self, action, event):
                return {"status": "failure", "error": "no technician on shift"}

        executor = ExecutionEngine(store, policy, signals, action_executor=Refusing())
        timer = SuggestionTimer(executor, store, policy, signals)
        result = timer.create(match)

        fired = timer.fire(result.id)

        assert not fired.success
        assert store.get_pattern(match.pattern.id).failure_count == 1

    def test_cancel_all_stops_countdowns(self, suggestions, match, store):
        first = suggestions.create(match, timeout_ms=100)
        suggestions.create(match, timeout_ms=100)

        assert suggestions.cancel_all() == 2
        time.sleep(0.3)
        assert store.executions_for_reference(first.id) == []
        assert len(suggestions) == 0


@pytest.mark.parametrize("attempt", range(5))
def test_concurrent_approve_and_timeout_execute_once(suggestions, match, store, attempt):
    result = suggestions.create(match)
    start = threading.Barrier(2)

    def approve():
        start.wait()
        return result.approve(user_id="front-desk")

    def fire():
        start.wait()
        return suggestions.fire(result.id)

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = [f.result() for f in [pool.submit(approve), pool.submit(fire)]]

    assert sorted(o.type for o in outcomes) == [EXECUTED, NOT_FOUND]
    assert len(store.executions_for_reference(result.id)) == 1
