"""
Suggestion Timer

Medium-confidence matches wait here with a countdown to auto-execution.

States: created -> approved | rejected | modified | timed out

Every transition starts with claim(): a compare-and-delete on the pending
registry under one lock. Whoever claims first (a human handle or the timer
thread) owns the suggestion; everyone else gets NotFoundResult. That gives
at most one execution per suggestion.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any

from opspilot.automation.executor import ExecutionEngine, PatternExecutionError
from opspilot.automation.results import (
    ExecutedResult,
    NotFoundResult,
    RejectedResult,
    SuggestionResult,
)
from opspilot.infrastructure.database import write_quietly
from opspilot.observability.logging import get_logger
from opspilot.observability.signals import SignalBus, SignalType
from opspilot.observability.telemetry import counter
from opspilot.runtime.policy import Policy
from opspilot.storage.models import Event, Match, Pattern, new_id, utc_now
from opspilot.storage.repository import PatternStore

logger = get_logger(__name__)


@dataclass
class Suggestion:
    id: str
    pattern: Pattern
    event: Event
    confidence: float
    deadline: datetime
    timer: threading.Timer | None = field(default=None, repr=False)


class SuggestionTimer:
    """In-memory registry of pending suggestions, one timer each."""

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
        self._pending: dict[str, Suggestion] = {}
        self._lock = threading.Lock()

    def create(self, match: Match, timeout_ms: int | None = None) -> SuggestionResult:
        """
        Register a suggestion and start its countdown.

        Side Effects:
            - Starts a daemon threading.Timer
            - Emits suggestionCreated
        """
        if timeout_ms is None:
            timeout_ms = self.policy.routing.suggestion_timeout_ms
        suggestion_id = new_id()
        suggestion = Suggestion(
            id=suggestion_id,
            pattern=match.pattern,
            event=match.event,
            confidence=match.confidence,
            deadline=utc_now() + timedelta(milliseconds=timeout_ms),
        )
        timer = threading.Timer(timeout_ms / 1000, self.fire, args=(suggestion_id,))
        timer.daemon = True
        timer.name = f"suggestion-{suggestion_id[:8]}"
        suggestion.timer = timer

        with self._lock:
            self._pending[suggestion_id] = suggestion
        timer.start()

        counter("suggestion.created")
        self.signals.emit(
            SignalType.SUGGESTION_CREATED,
            suggestion_id=suggestion_id,
            pattern_id=match.pattern.id,
            confidence=match.confidence,
            timeout_ms=timeout_ms,
        )
        return SuggestionResult(
            id=suggestion_id,
            confidence=match.confidence,
            timeout_ms=timeout_ms,
            pattern_id=match.pattern.id,
            approve=partial(self.approve, suggestion_id),
            reject=partial(self.reject, suggestion_id),
            modify=partial(self.modify, suggestion_id),
        )

    def claim(self, suggestion_id: str) -> Suggestion | None:
        """Atomically remove a pending suggestion and stop its countdown."""
        with self._lock:
            suggestion = self._pending.pop(suggestion_id, None)
        if suggestion is not None and suggestion.timer is not None:
            suggestion.timer.cancel()
        return suggestion

    def get(self, suggestion_id: str) -> Suggestion | None:
        with self._lock:
            return self._pending.get(suggestion_id)

    def pending(self) -> list[Suggestion]:
        with self._lock:
            return list(self._pending.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def _not_found(self, suggestion_id: str, action: str) -> NotFoundResult:
        counter("suggestion.not_found")
        logger.info("Suggestion %s already resolved; %s ignored", suggestion_id, action)
        return NotFoundResult(id=suggestion_id)

    # ------------------------------------------------------------------
    # Human handles
    # ------------------------------------------------------------------

    def approve(
        self, suggestion_id: str, user_id: str | None = None
    ) -> ExecutedResult | NotFoundResult:
        """
        Execute the suggested pattern now.

        Raises:
            PatternExecutionError: Propagated from the execution engine
        """
        suggestion = self.claim(suggestion_id)
        if suggestion is None:
            return self._not_found(suggestion_id, "approve")

        write_quietly(
            "approval audit",
            self.store.insert_approval,
            suggestion.pattern.id,
            suggestion_id,
            "suggestion",
            user_id,
        )
        result = self.executor.execute(
            suggestion.pattern,
            suggestion.event,
            suggestion.confidence,
            reference_id=suggestion_id,
            user_id=user_id,
        )
        result.was_approved = True
        return result

    def reject(
        self, suggestion_id: str, reason: str | None = None, user_id: str | None = None
    ) -> RejectedResult | NotFoundResult:
        """
        Drop the suggestion without executing.

        Side Effects:
            - Inserts a pattern_rejections row
            - Applies the rejection penalty to the pattern's confidence
            - Emits suggestionRejected
        """
        suggestion = self.claim(suggestion_id)
        if suggestion is None:
            return self._not_found(suggestion_id, "reject")

        pattern_id = suggestion.pattern.id
        routing = self.policy.routing
        write_quietly(
            "rejection audit",
            self.store.insert_rejection,
            pattern_id,
            suggestion_id,
            reason,
            suggestion.event.snapshot(),
            user_id,
        )
        write_quietly(
            "rejection penalty",
            self.store.adjust_confidence,
            pattern_id,
            -routing.rejection_penalty,
            routing.confidence_floor,
            1.0,
            "suggestion_rejected",
        )
        counter("suggestion.rejected")
        self.signals.emit(
            SignalType.SUGGESTION_REJECTED,
            suggestion_id=suggestion_id,
            pattern_id=pattern_id,
            reason=reason,
        )
        return RejectedResult(id=suggestion_id, pattern_id=pattern_id, reason=reason)

    def modify(
        self, suggestion_id: str, changes: dict[str, Any], user_id: str | None = None
    ) -> ExecutedResult | NotFoundResult:
        """
        Execute a copy of the pattern with changes merged into its logic.

        The stored pattern is not changed; the edit is reported to learning
        through the execution outcome.

        Raises:
            PatternValidationError: The merged logic is invalid (suggestion stays pending)
            PatternExecutionError: Propagated from the execution engine
        """
        current = self.get(suggestion_id)
        if current is None:
            return self._not_found(suggestion_id, "modify")
        modified = current.pattern.with_logic_changes(changes)

        suggestion = self.claim(suggestion_id)
        if suggestion is None:
            return self._not_found(suggestion_id, "modify")

        result = self.executor.execute(
            modified,
            suggestion.event,
            suggestion.confidence,
            reference_id=suggestion_id,
            human_modified=True,
            modifications=changes,
            user_id=user_id,
        )
        result.was_approved = True
        return result

    # ------------------------------------------------------------------
    # Countdown
    # ------------------------------------------------------------------

    def fire(self, suggestion_id: str) -> ExecutedResult | NotFoundResult:
        """
        Timer callback: execute as approve() would, if nobody resolved it first.

        Runs on the timer thread, so execution failures are logged here
        rather than raised.
        """
        suggestion = self.claim(suggestion_id)
        if suggestion is None:
            return NotFoundResult(id=suggestion_id)

        counter("suggestion.timeout_fired")
        success = False
        try:
            result = self.executor.execute(
                suggestion.pattern,
                suggestion.event,
                suggestion.confidence,
                was_auto_executed=True,
                reference_id=suggestion_id,
            )
            success = result.success
        except PatternExecutionError as e:
            logger.warning("Suggestion %s timed out and its execution failed: %s", suggestion_id, e)
            result = ExecutedResult(
                success=False,
                pattern_id=suggestion.pattern.id,
                confidence=suggestion.confidence,
                was_auto_executed=True,
            )

        write_quietly(
            "timeout audit",
            self.store.insert_timeout_execution,
            suggestion.pattern.id,
            suggestion_id,
            success,
        )
        self.signals.emit(
            SignalType.SUGGESTION_TIMEOUT_EXECUTED,
            suggestion_id=suggestion_id,
            pattern_id=suggestion.pattern.id,
            success=success,
        )
        return result

    def cancel_all(self) -> int:
        """Stop every countdown without executing; used on shutdown."""
        with self._lock:
            suggestions = list(self._pending.values())
            self._pending.clear()
        for suggestion in suggestions:
            if suggestion.timer is not None:
                suggestion.timer.cancel()
        if suggestions:
            logger.info("Cancelled %d pending suggestions", len(suggestions))
        return len(suggestions)
