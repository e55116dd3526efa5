"""
Execution Engine

Runs one pattern against one event:

1. Preconditions (logic.conditions) - any failure aborts before side effects
2. Interpret the typed logic (function / sequence / api_call / action /
   action_list / passthrough)
3. Best-effort side effects on success
4. Record the outcome, bump stats, penalize failures, notify listeners

Execution failures are always re-raised to the caller. Store writes are
fire-and-forget: a failed write is logged and the result still stands.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import requests

from opspilot.automation.collaborators import (
    ActionExecutor,
    HandlerRegistry,
    RecordingActionExecutor,
    RequestsApiCaller,
)
from opspilot.automation.conditions import check_preconditions
from opspilot.automation.results import ExecutedResult
from opspilot.infrastructure.database import write_quietly
from opspilot.learning.evolution import classify_failure
from opspilot.observability.logging import get_logger
from opspilot.observability.signals import SignalBus, SignalType
from opspilot.observability.telemetry import counter, log_event
from opspilot.runtime.policy import Policy
from opspilot.storage.models import (
    PRECONDITION_ERROR_PREFIX,
    ActionDescriptor,
    ActionListLogic,
    ActionLogic,
    ApiCallLogic,
    Event,
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionStatus,
    FailureSeverity,
    FunctionLogic,
    PassthroughLogic,
    Pattern,
    SequenceLogic,
    SideEffect,
    new_id,
)
from opspilot.storage.repository import PatternStore

logger = get_logger(__name__)

OutcomeListener = Callable[[ExecutionOutcome], None]


class PatternExecutionError(Exception):
    """Pattern logic failed while running."""

    def __init__(
        self,
        message: str,
        pattern_id: str | None = None,
        severity: FailureSeverity = FailureSeverity.MINOR,
    ) -> None:
        super().__init__(message)
        self.pattern_id = pattern_id
        self.severity = severity


class ActionFailedError(PatternExecutionError):
    """The action collaborator reported a non-success status."""

    pass


class ExecutionEngine:
    """Interprets pattern logic and records what happened."""

    def __init__(
        self,
        store: PatternStore,
        policy: Policy,
        signals: SignalBus,
        action_executor: ActionExecutor | None = None,
        handlers: HandlerRegistry | None = None,
        api_caller: RequestsApiCaller | None = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.signals = signals
        self.action_executor = action_executor or RecordingActionExecutor()
        self.handlers = handlers or HandlerRegistry()
        self.api_caller = api_caller or RequestsApiCaller()
        self._listeners: list[OutcomeListener] = []

    def add_outcome_listener(self, listener: OutcomeListener) -> None:
        self._listeners.append(listener)

    def execute(
        self,
        pattern: Pattern,
        event: Event,
        confidence: float,
        *,
        was_auto_executed: bool = False,
        reference_id: str | None = None,
        human_modified: bool = False,
        modifications: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> ExecutedResult:
        """
        Execute pattern logic for an event.

        Args:
            pattern: Pattern to run (may be a modified copy for this call only)
            event: Triggering event
            confidence: Match confidence at execution time
            was_auto_executed: True for the auto tier and suggestion timeouts
            reference_id: Suggestion/queue id the execution is attributed to
            human_modified: True when a human merged changes into the logic
            modifications: The merged changes, for learning
            user_id: Human who resolved the suggestion/approval, if any

        Returns:
            ExecutedResult(success=True), or success=False with validation_error
            when a precondition does not hold

        Raises:
            PatternExecutionError: Logic failed (already recorded and penalized)

        Side Effects:
            - Appends a pattern_execution_history row
            - Updates pattern counters and, on failure, confidence
            - Emits executionStart / executionSuccess / executionFailure
            - Invokes outcome listeners (confidence evolution)
        """
        reference_id = reference_id or new_id()
        self.signals.emit(
            SignalType.EXECUTION_START,
            pattern_id=pattern.id,
            reference_id=reference_id,
            confidence=confidence,
        )

        validation_error = check_preconditions(pattern.logic.conditions, event)
        if validation_error is not None:
            counter("execution.validation_failed")
            logger.info("Pattern %s preconditions failed: %s", pattern.id, validation_error)
            self._record(
                pattern,
                event,
                confidence,
                reference_id,
                was_auto_executed,
                human_modified,
                status=ExecutionStatus.FAILURE,
                error=f"{PRECONDITION_ERROR_PREFIX}{validation_error}",
            )
            return ExecutedResult(
                success=False,
                pattern_id=pattern.id,
                confidence=confidence,
                was_auto_executed=was_auto_executed,
                was_modified=human_modified,
                validation_error=validation_error,
            )

        start = time.perf_counter()
        try:
            result = self.interpret(pattern, pattern.logic, event)
        except Exception as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            error = self._as_execution_error(pattern, e)
            self._handle_failure(
                pattern,
                event,
                confidence,
                reference_id,
                was_auto_executed,
                human_modified,
                modifications,
                user_id,
                error,
                duration_ms,
            )
            if error is e:
                raise
            raise error from e

        duration_ms = int((time.perf_counter() - start) * 1000)
        self._apply_side_effects(pattern, pattern.logic.side_effects, event)

        self._record(
            pattern,
            event,
            confidence,
            reference_id,
            was_auto_executed,
            human_modified,
            status=ExecutionStatus.SUCCESS,
            result=result,
            duration_ms=duration_ms,
        )
        write_quietly("outcome stats", self.store.record_outcome_stats, pattern.id, True)
        counter("execution.success")
        self.signals.emit(
            SignalType.EXECUTION_SUCCESS,
            pattern_id=pattern.id,
            reference_id=reference_id,
            duration_ms=duration_ms,
        )
        self._notify(
            ExecutionOutcome(
                pattern=pattern,
                event=event,
                success=True,
                confidence=confidence,
                result=result,
                was_auto_executed=was_auto_executed,
                human_modified=human_modified,
                modifications=modifications,
                reference_id=reference_id,
                user_id=user_id,
                duration_ms=duration_ms,
            )
        )
        return ExecutedResult(
            success=True,
            result=result,
            pattern_id=pattern.id,
            confidence=confidence,
            was_auto_executed=was_auto_executed,
            was_modified=human_modified,
        )

    # ------------------------------------------------------------------
    # Interpretation
    # ------------------------------------------------------------------

    def interpret(self, pattern: Pattern, logic: Any, event: Event) -> Any:
        """Dispatch on the logic model; every member of the Logic union is handled."""
        if isinstance(logic, FunctionLogic):
            handler = self.handlers.get(logic.handler)
            if handler is None:
                raise PatternExecutionError(
                    f"No handler registered for '{logic.handler}'", pattern.id
                )
            return handler(event, dict(logic.parameters))

        if isinstance(logic, SequenceLogic):
            results = []
            for index, step in enumerate(logic.steps):
                skipped = check_preconditions(step.conditions, event)
                if skipped is not None:
                    logger.debug("Pattern %s step %d skipped: %s", pattern.id, index, skipped)
                    results.append({"step": index, "skipped": skipped})
                    continue
                results.append({"step": index, "result": self.interpret(pattern, step, event)})
            return {"steps": results}

        if isinstance(logic, ApiCallLogic):
            try:
                return self.api_caller.call(logic, event)
            except requests.exceptions.Timeout as e:
                raise PatternExecutionError(
                    f"API call timeout: {logic.method} {logic.url}: {e}",
                    pattern.id,
                    FailureSeverity.MAJOR,
                ) from e
            except requests.exceptions.RequestException as e:
                raise PatternExecutionError(
                    f"API call failed: {logic.method} {logic.url}: {e}",
                    pattern.id,
                    classify_failure(e),
                ) from e

        if isinstance(logic, ActionLogic):
            return self._dispatch_action(pattern, logic.action, event)

        if isinstance(logic, ActionListLogic):
            return self._dispatch_action_list(pattern, logic, event)

        if isinstance(logic, PassthroughLogic):
            return dict(logic.payload)

        raise PatternExecutionError(
            f"Unsupported logic type {type(logic).__name__}", pattern.id, FailureSeverity.CRITICAL
        )

    def _dispatch_action(self, pattern: Pattern, action: ActionDescriptor, event: Event) -> Any:
        response = self.action_executor.execute(action, event)
        status = (response or {}).get("status")
        if status != "success":
            detail = (response or {}).get("result") or (response or {}).get("error")
            raise ActionFailedError(
                f"Action '{action.name}' returned {status or 'no status'}: {detail}",
                pattern.id,
                classify_failure(str(detail)),
            )
        return response.get("result")

    def _dispatch_action_list(self, pattern: Pattern, logic: ActionListLogic, event: Event) -> Any:
        results: list[dict[str, Any]] = []
        failures: list[ActionFailedError] = []
        for action in logic.actions:
            try:
                results.append(
                    {"action": action.name, "result": self._dispatch_action(pattern, action, event)}
                )
            except ActionFailedError as e:
                if logic.stop_on_failure:
                    raise
                failures.append(e)
                results.append({"action": action.name, "error": str(e)})

        if failures:
            worst = max(failures, key=lambda f: _SEVERITY_ORDER[f.severity])
            raise ActionFailedError(
                f"{len(failures)}/{len(logic.actions)} actions failed: {failures[0]}",
                pattern.id,
                worst.severity,
            )
        return {"actions": results}

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _apply_side_effects(self, pattern: Pattern, effects: list[SideEffect], event: Event) -> None:
        """Each effect runs independently; a failure never undoes earlier effects."""
        for effect in effects:
            try:
                if effect.kind == "action":
                    self._dispatch_action(
                        pattern,
                        ActionDescriptor(name=effect.name, parameters=effect.parameters),
                        event,
                    )
                elif effect.kind == "notify":
                    log_event(
                        "pattern.notify",
                        pattern_id=pattern.id,
                        notification=effect.name,
                        parameters=effect.parameters,
                    )
                else:
                    logger.info(
                        "Pattern %s side effect %s: %s", pattern.id, effect.name, effect.parameters
                    )
            except Exception as e:
                counter("execution.side_effect_failed")
                logger.warning("Side effect %s failed for pattern %s: %s", effect.name, pattern.id, e)

    # ------------------------------------------------------------------
    # Outcome bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _as_execution_error(pattern: Pattern, error: Exception) -> PatternExecutionError:
        if isinstance(error, PatternExecutionError):
            if error.pattern_id is None:
                error.pattern_id = pattern.id
            return error
        return PatternExecutionError(
            str(error) or type(error).__name__, pattern.id, classify_failure(error)
        )

    def _handle_failure(
        self,
        pattern: Pattern,
        event: Event,
        confidence: float,
        reference_id: str,
        was_auto_executed: bool,
        human_modified: bool,
        modifications: dict[str, Any] | None,
        user_id: str | None,
        error: PatternExecutionError,
        duration_ms: int,
    ) -> None:
        logger.warning("Pattern %s execution failed (%s): %s", pattern.id, error.severity.value, error)
        self._record(
            pattern,
            event,
            confidence,
            reference_id,
            was_auto_executed,
            human_modified,
            status=ExecutionStatus.FAILURE,
            error=str(error),
            failure_severity=error.severity,
            duration_ms=duration_ms,
        )
        write_quietly("outcome stats", self.store.record_outcome_stats, pattern.id, False)
        routing = self.policy.routing
        write_quietly(
            "failure penalty",
            self.store.adjust_confidence,
            pattern.id,
            -routing.execution_failure_penalty,
            routing.confidence_floor,
            1.0,
            "execution_failure",
        )
        counter("execution.failure")
        self.signals.emit(
            SignalType.EXECUTION_FAILURE,
            pattern_id=pattern.id,
            reference_id=reference_id,
            error=str(error),
            severity=error.severity.value,
        )
        self._notify(
            ExecutionOutcome(
                pattern=pattern,
                event=event,
                success=False,
                confidence=confidence,
                error=str(error),
                failure_severity=error.severity,
                was_auto_executed=was_auto_executed,
                human_modified=human_modified,
                modifications=modifications,
                reference_id=reference_id,
                user_id=user_id,
                duration_ms=duration_ms,
            )
        )

    def _record(
        self,
        pattern: Pattern,
        event: Event,
        confidence: float,
        reference_id: str,
        was_auto_executed: bool,
        human_modified: bool,
        status: ExecutionStatus,
        result: Any = None,
        error: str | None = None,
        failure_severity: FailureSeverity | None = None,
        duration_ms: int = 0,
    ) -> None:
        record = ExecutionRecord(
            pattern_id=pattern.id,
            reference_id=reference_id,
            event_snapshot=event.snapshot(),
            confidence_at_execution=confidence,
            was_auto_executed=was_auto_executed,
            was_modified=human_modified,
            status=status,
            duration_ms=duration_ms,
            result=result,
            error=error,
            failure_severity=failure_severity,
        )
        write_quietly("execution record", self.store.append_execution, record)

    def _notify(self, outcome: ExecutionOutcome) -> None:
        for listener in self._listeners:
            try:
                listener(outcome)
            except Exception as e:
                counter("learning.listener_failed")
                logger.warning("Outcome listener failed for pattern %s: %s", outcome.pattern.id, e)


_SEVERITY_ORDER = {FailureSeverity.MINOR: 1, FailureSeverity.MAJOR: 2, FailureSeverity.CRITICAL: 3}
