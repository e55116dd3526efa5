"""
Approval Queue

Low-confidence matches are parked as durable `pending` rows. A human decides
later (no expiry). The decision is a conditional UPDATE on the pending row, so
exactly one decision wins; any later attempt raises ApprovalConflictError.
The winning decision is recorded before anything executes.
"""

from __future__ import annotations

import threading
from functools import partial
from typing import Any

from opspilot.automation.executor import ExecutionEngine
from opspilot.automation.results import ApprovalRequiredResult, ExecutedResult, RejectedResult
from opspilot.infrastructure.database import write_quietly
from opspilot.observability.logging import get_logger
from opspilot.observability.signals import SignalBus, SignalType
from opspilot.observability.telemetry import counter
from opspilot.runtime.policy import Policy
from opspilot.storage.models import (
    ApprovalQueueEntry,
    Event,
    Match,
    Pattern,
    QueueStatus,
    coerce_event,
    utc_now,
)
from opspilot.storage.repository import PatternStore

logger = get_logger(__name__)


class ApprovalQueueError(Exception):
    """Base exception for approval queue errors."""

    pass


class ApprovalNotFoundError(ApprovalQueueError):
    """Queue entry (or the pattern it references) not found."""

    pass


class ApprovalConflictError(ApprovalQueueError):
    """Queue entry was already decided."""

    pass


class ApprovalQueue:
    """Durable approve / reject / modify workflow over pattern_approval_queue."""

    def __init__(
        self,
        executor: ExecutionEngine,
        store: PatternStore,
        policy: Policy,
        signals: SignalBus,
    ) -> None:
        self.executor = executor
        self.store = store
        self.policy = policy
        self.signals = signals
        # Entries whose insert failed; still decidable while this process lives
        self._unpersisted: dict[str, tuple[ApprovalQueueEntry, Pattern, Event]] = {}
        self._lock = threading.Lock()

    def queue(self, match: Match, reasoning: str | None = None) -> ApprovalRequiredResult:
        """
        Park a match for human review.

        Side Effects:
            - Inserts a pending pattern_approval_queue row
            - Emits approvalQueued
        """
        entry = ApprovalQueueEntry(
            pattern_id=match.pattern.id,
            event_snapshot=match.event.snapshot(),
            confidence=match.confidence,
            reasoning=reasoning or match.pattern.logic.reasoning,
        )
        if write_quietly("approval queue entry", self.store.insert_queue_entry, entry) is None:
            with self._lock:
                self._unpersisted[entry.id] = (entry, match.pattern, match.event)

        counter("approval.queued")
        self.signals.emit(
            SignalType.APPROVAL_QUEUED,
            entry_id=entry.id,
            pattern_id=entry.pattern_id,
            confidence=entry.confidence,
        )
        return ApprovalRequiredResult(
            id=entry.id,
            confidence=entry.confidence,
            pattern_id=entry.pattern_id,
            approve=partial(self.approve, entry.id),
            reject=partial(self.reject, entry.id),
            modify=partial(self.modify, entry.id),
        )

    def get(self, entry_id: str) -> ApprovalQueueEntry | None:
        with self._lock:
            held = self._unpersisted.get(entry_id)
        if held is not None:
            return held[0]
        return self.store.get_queue_entry(entry_id)

    def list_pending(self) -> list[ApprovalQueueEntry]:
        with self._lock:
            held = [
                entry
                for entry, _, _ in self._unpersisted.values()
                if entry.status == QueueStatus.PENDING
            ]
        return self.store.list_queue(QueueStatus.PENDING) + held

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _load(self, entry_id: str) -> tuple[ApprovalQueueEntry, Pattern, Event]:
        with self._lock:
            held = self._unpersisted.get(entry_id)
        if held is not None:
            return held

        entry = self.store.get_queue_entry(entry_id)
        if entry is None:
            raise ApprovalNotFoundError(f"Approval entry {entry_id} not found")
        pattern = self.store.get_pattern(entry.pattern_id)
        if pattern is None:
            raise ApprovalNotFoundError(
                f"Pattern {entry.pattern_id} for approval entry {entry_id} not found"
            )
        return entry, pattern, coerce_event(entry.event_snapshot)

    def _decide(
        self,
        entry: ApprovalQueueEntry,
        status: QueueStatus,
        user_id: str,
        reason: str | None = None,
        modifications: dict[str, Any] | None = None,
    ) -> None:
        """
        Raises:
            ApprovalConflictError: Somebody else decided this entry first
        """
        with self._lock:
            held = self._unpersisted.get(entry.id)
            if held is not None:
                if held[0].status != QueueStatus.PENDING:
                    raise ApprovalConflictError(f"Approval entry {entry.id} already {held[0].status}")
                held[0].status = status
                held[0].decided_by = user_id
                held[0].decided_at = utc_now()
                held[0].decision_reason = reason
                held[0].modifications = modifications
                return

        if not self.store.decide_queue_entry(entry.id, status, user_id, reason, modifications):
            current = self.store.get_queue_entry(entry.id)
            state = current.status if current else "missing"
            raise ApprovalConflictError(f"Approval entry {entry.id} already {state}")

    def approve(self, entry_id: str, user_id: str) -> ExecutedResult:
        """
        Approve and execute the queued pattern.

        Raises:
            ApprovalNotFoundError: Unknown entry
            ApprovalConflictError: Entry already decided
            PatternExecutionError: Propagated from the execution engine
        """
        entry, pattern, event = self._load(entry_id)
        self._decide(entry, QueueStatus.APPROVED, user_id)

        write_quietly(
            "approval audit", self.store.insert_approval, pattern.id, entry_id, "approval_queue", user_id
        )
        counter("approval.approved")
        self.signals.emit(
            SignalType.APPROVAL_APPROVED, entry_id=entry_id, pattern_id=pattern.id, user_id=user_id
        )
        result = self.executor.execute(
            pattern, event, entry.confidence, reference_id=entry_id, user_id=user_id
        )
        result.was_approved = True
        return result

    def reject(self, entry_id: str, user_id: str, reason: str | None = None) -> RejectedResult:
        """
        Reject without executing.

        Raises:
            ApprovalNotFoundError: Unknown entry
            ApprovalConflictError: Entry already decided
        """
        entry, pattern, event = self._load(entry_id)
        self._decide(entry, QueueStatus.REJECTED, user_id, reason=reason)

        routing = self.policy.routing
        write_quietly(
            "rejection audit",
            self.store.insert_rejection,
            pattern.id,
            entry_id,
            reason,
            event.snapshot(),
            user_id,
        )
        write_quietly(
            "rejection penalty",
            self.store.adjust_confidence,
            pattern.id,
            -routing.rejection_penalty,
            routing.confidence_floor,
            1.0,
            "approval_rejected",
        )
        counter("approval.rejected")
        self.signals.emit(
            SignalType.APPROVAL_REJECTED,
            entry_id=entry_id,
            pattern_id=pattern.id,
            user_id=user_id,
            reason=reason,
        )
        return RejectedResult(id=entry_id, pattern_id=pattern.id, reason=reason)

    def modify(self, entry_id: str, user_id: str, changes: dict[str, Any]) -> ExecutedResult:
        """
        Approve with changes merged into a one-off copy of the pattern logic.

        Raises:
            PatternValidationError: Merged logic is invalid (entry stays pending)
            ApprovalNotFoundError: Unknown entry
            ApprovalConflictError: Entry already decided
            PatternExecutionError: Propagated from the execution engine
        """
        entry, pattern, event = self._load(entry_id)
        modified = pattern.with_logic_changes(changes)
        self._decide(entry, QueueStatus.APPROVED, user_id, reason="modified", modifications=changes)

        write_quietly(
            "approval audit", self.store.insert_approval, pattern.id, entry_id, "approval_queue", user_id
        )
        counter("approval.modified")
        self.signals.emit(
            SignalType.APPROVAL_APPROVED,
            entry_id=entry_id,
            pattern_id=pattern.id,
            user_id=user_id,
            modified=True,
        )
        result = self.executor.execute(
            modified,
            event,
            entry.confidence,
            reference_id=entry_id,
            human_modified=True,
            modifications=changes,
            user_id=user_id,
        )
        result.was_approved = True
        return result
