"""Tests for AutomationEngine.process_event tier dispatch"""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime

import pytest

from opspilot.automation.engine import AutomationEngine
from opspilot.automation.executor import PatternExecutionError
from opspilot.automation.results import ANOMALY, APPROVAL_REQUIRED, EXECUTED, SUGGESTION
from opspilot.config import SEARCH_MODULE_TIMEOUT
from opspilot.matching.modules import PatternModule
from opspilot.observability.signals import SignalBus, SignalType
from opspilot.observability.telemetry import get_counter
from opspilot.storage.models import QueueStatus, Severity

LONG_AGO = datetime(2000, 1, 1, tzinfo=UTC)

EVENT = {"kind": "maintenance", "context": {"location": "Bay 2", "userId": "m-7"}}


class TestTiers:
    def test_high_confidence_auto_executable_runs(self, engine, make_pattern, action_executor, store):
        pattern = make_pattern(confidence_score=0.96, auto_executable=True)

        result = engine.process_event(EVENT)

        assert result.type == EXECUTED
        assert result.success
        assert result.was_auto_executed
        assert result.pattern_id == pattern.id
        assert action_executor.calls[0][0].name == "open_ticket"
        assert store.get_pattern(pattern.id).confidence_score == pytest.approx(0.99)

    def test_high_confidence_without_auto_flag_is_suggested(self, engine, make_pattern, action_executor):
        make_pattern(confidence_score=0.96, auto_executable=False)

        result = engine.process_event(EVENT)

        assert result.type == SUGGESTION
        assert action_executor.calls == []

    def test_medium_confidence_is_suggested(self, engine, make_pattern):
        pattern = make_pattern(confidence_score=0.8)

        result = engine.process_event(EVENT)

        assert result.type == SUGGESTION
        assert result.timeout_ms == 30000
        assert result.pattern_id == pattern.id
        assert engine.suggestions.get(result.id) is not None

    def test_low_confidence_is_queued(self, engine, make_pattern, store):
        make_pattern(confidence_score=0.55)

        result = engine.process_event(EVENT)

        assert result.type == APPROVAL_REQUIRED
        entry = store.get_queue_entry(result.id)
        assert entry.status == QueueStatus.PENDING.value
        assert entry.event_snapshot["context"]["location"] == "Bay 2"
        assert "needs approval" in entry.reasoning

    def test_very_low_confidence_is_anomaly(self, engine, make_pattern, action_executor):
        make_pattern(confidence_score=0.4)

        result = engine.process_event(EVENT)

        assert result.type == ANOMALY
        assert result.reasons[0] == "low_confidence"
        assert action_executor.calls == []

    def test_no_pattern_is_new_pattern_anomaly(self, engine, store):
        result = engine.process_event(EVENT)

        assert result.type == ANOMALY
        assert result.reasons[0] == "no_matching_pattern"
        assert result.types == ["new_pattern"]
        assert store.get_anomaly(result.anomaly_id) is not None


class TestVeto:
    def test_security_threat_blocks_auto_execution(self, engine, make_pattern, action_executor, notifier):
        make_pattern(confidence_score=0.99, auto_executable=True)
        event = {"kind": "maintenance", "context": {"note": "<script>alert(1)</script>"}}

        result = engine.process_event(event)

        assert result.type == ANOMALY
        assert result.severity is Severity.CRITICAL
        assert result.escalated
        assert result.requires_human
        assert action_executor.calls == []
        assert notifier.notified == [result.anomaly_id]
        assert get_counter("router.tier.anomaly") == 1

    @pytest.mark.parametrize("raw", [None, "maintenance", ["kind", "maintenance"], {"context": {}}])
    def test_malformed_input_is_data_quality_anomaly(self, engine, raw):
        result = engine.process_event(raw)

        assert result.type == ANOMALY
        assert "data_quality" in result.types
        assert result.severity is Severity.LOW
        assert not result.escalated


def test_auto_execution_failure_propagates(database, policy, make_pattern):
    class Refusing:
        def execute(self, action, event):
            return {"status": "failure", "error": "ticketing system down"}

    signals = SignalBus()
    processed = []
    signals.subscribe(SignalType.PROCESSED, lambda s, p: processed.append(p))
    pattern = make_pattern(confidence_score=0.97, auto_executable=True)

    with AutomationEngine(database, policy, signals=signals, action_executor=Refusing()) as engine:
        with pytest.raises(PatternExecutionError, match="ticketing system down"):
            engine.process_event(EVENT)
        assert engine.store.get_pattern(pattern.id).failure_count == 1

    assert processed[-1]["result"] == "error"


def test_lifecycle_signals_and_event_log(engine, make_pattern, received_signals, store):
    make_pattern(confidence_score=0.8)

    result = engine.process_event(EVENT)

    kinds = [signal for signal, _ in received_signals]
    assert kinds[0] == SignalType.RECEIVED
    assert kinds[-1] == SignalType.PROCESSED
    assert SignalType.SUGGESTION_CREATED in kinds
    assert received_signals[-1][1]["result"] == result.type
    assert store.count_recent_events("m-7", None, LONG_AGO) == 1
    assert get_counter("engine.events_received") == 1


def test_close_cancels_pending_suggestions(database, policy, make_pattern, store):
    make_pattern(confidence_score=0.8)
    engine = AutomationEngine(database, policy)

    result = engine.process_event(EVENT)
    engine.close()

    assert engine.suggestions.get(result.id) is None
    assert store.executions_for_reference(result.id) == []


class HungModule(PatternModule):
    name = "hung"
    handles = frozenset({"maintenance"})

    def __init__(self, store, policy):
        super().__init__(store, policy)
        self.release = threading.Event()

    def find_matches(self, event):
        self.release.wait(timeout=SEARCH_MODULE_TIMEOUT + 10)
        return []


def test_default_search_budget_drops_hung_module(database, policy, make_pattern):
    """A module that never answers is dropped after the configured search budget"""
    pattern = make_pattern(confidence_score=0.8)
    engine = AutomationEngine(database, policy)
    hung = HungModule(engine.store, policy)
    engine.registry.register(hung)

    try:
        started = time.monotonic()
        result = engine.process_event(EVENT)
        elapsed = time.monotonic() - started
    finally:
        hung.release.set()
        engine.close()

    assert engine.search.module_timeout == SEARCH_MODULE_TIMEOUT
    assert elapsed < SEARCH_MODULE_TIMEOUT + 5
    assert result.type == SUGGESTION
    assert result.pattern_id == pattern.id
    assert get_counter("search.module_failed") == 1
