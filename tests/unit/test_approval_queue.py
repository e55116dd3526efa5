"""Tests for the durable approval queue"""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from opspilot.automation.approvals import ApprovalConflictError, ApprovalNotFoundError
from opspilot.automation.results import APPROVAL_REQUIRED, EXECUTED, REJECTED
from opspilot.observability.signals import SignalType
from opspilot.storage.models import Event, Match, PatternValidationError, QueueStatus


@pytest.fixture
def match(make_pattern):
    pattern = make_pattern(confidence_score=0.6)
    return Match(
        pattern=pattern,
        event=Event(kind="maintenance", context={"location": "Bay 7", "reported_by": "m-12"}),
        confidence=0.6,
        source="store",
    )


@pytest.fixture
def approvals(engine):
    return engine.approvals


class TestQueue:
    def test_queue_persists_pending_row(self, approvals, match, store, received_signals):
        result = approvals.queue(match, reasoning="needs a manager")

        assert result.type == APPROVAL_REQUIRED
        assert result.confidence == 0.6
        entry = store.get_queue_entry(result.id)
        assert entry.status == QueueStatus.PENDING.value
        assert entry.pattern_id == match.pattern.id
        assert entry.event_snapshot["context"]["location"] == "Bay 7"
        assert entry.reasoning == "needs a manager"
        assert [e.id for e in approvals.list_pending()] == [result.id]
        assert SignalType.APPROVAL_QUEUED in [signal for signal, _ in received_signals]

    def test_failed_insert_still_returns_decidable_entry(self, approvals, match, store):
        with patch.object(
            store.__class__, "insert_queue_entry", side_effect=sqlite3.OperationalError("disk I/O")
        ):
            result = approvals.queue(match)

        assert store.get_queue_entry(result.id) is None
        assert approvals.get(result.id) is not None
        assert approvals.approve(result.id, "manager").success


class TestDecisions:
    def test_approve_executes_snapshot_and_closes_entry(
        self, approvals, match, store, action_executor
    ):
        result = approvals.queue(match)

        executed = approvals.approve(result.id, "manager")

        assert executed.type == EXECUTED
        assert executed.success
        assert executed.was_approved
        assert action_executor.calls[0][1].context["location"] == "Bay 7"
        entry = store.get_queue_entry(result.id)
        assert entry.status == QueueStatus.APPROVED.value
        assert entry.decided_by == "manager"
        assert len(store.executions_for_reference(result.id)) == 1
        assert approvals.list_pending() == []

    def test_second_approve_conflicts(self, approvals, match, store):
        result = approvals.queue(match)
        approvals.approve(result.id, "manager")

        with pytest.raises(ApprovalConflictError, match="already approved"):
            approvals.approve(result.id, "other-manager")
        assert len(store.executions_for_reference(result.id)) == 1

    def test_reject_then_approve_conflicts(self, approvals, match, store, action_executor):
        result = approvals.queue(match)

        rejected = result.reject("manager", "tenant already fixed it")

        assert rejected.type == REJECTED
        assert store.get_queue_entry(result.id).decision_reason == "tenant already fixed it"
        assert store.get_pattern(match.pattern.id).confidence_score == pytest.approx(0.58)
        with pytest.raises(ApprovalConflictError):
            result.approve("manager")
        assert action_executor.calls == []

    def test_modify_executes_changed_logic(self, approvals, match, store, action_executor):
        result = approvals.queue(match)

        executed = approvals.modify(result.id, "manager", {"action": {"target": "plumbing"}})

        assert executed.was_modified
        assert action_executor.calls[0][0].target == "plumbing"
        entry = store.get_queue_entry(result.id)
        assert entry.modifications == {"action": {"target": "plumbing"}}
        assert store.get_pattern(match.pattern.id).logic.action.target == "facilities"

    def test_invalid_modification_keeps_entry_pending(self, approvals, match, store):
        result = approvals.queue(match)

        with pytest.raises(PatternValidationError):
            approvals.modify(result.id, "manager", {"action": {"bogus": True}})
        assert store.get_queue_entry(result.id).status == QueueStatus.PENDING.value

    def test_unknown_entry(self, approvals):
        with pytest.raises(ApprovalNotFoundError):
            approvals.approve("does-not-exist", "manager")

    def test_concurrent_decisions_only_one_wins(self, approvals, match, store):
        result = approvals.queue(match)

        def decide(user):
            try:
                approvals.approve(result.id, user)
                return "won"
            except ApprovalConflictError:
                return "conflict"

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(decide, ["a", "b", "c", "d"]))

        assert sorted(outcomes) == ["conflict", "conflict", "conflict", "won"]
        assert len(store.executions_for_reference(result.id)) == 1


def test_queue_survives_engine_restart(database, policy, match):
    from opspilot.automation.engine import AutomationEngine

    with AutomationEngine(database, policy) as first:
        entry_id = first.approvals.queue(match).id

    with AutomationEngine(database, policy) as second:
        assert [e.id for e in second.approvals.list_pending()] == [entry_id]
        assert second.approvals.approve(entry_id, "manager").success
