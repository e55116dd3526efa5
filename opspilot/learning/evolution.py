"""
Confidence Evolution

Feedback loop over execution outcomes and human edits.

Per outcome (registered as an execution-engine listener):
- success raises confidence (more for patterns on a clean 7-day streak)
- human-modified success raises it a little and records the edit
- failure lowers it by severity, doubled for repeat offenders
- promotion / demotion of the auto-executable flag
- fork check once a pattern collects enough edits

Batch (CLI / scheduler):
- apply_decay: idle patterns drift toward, never below, the decay floor
- evolve_patterns: heavily edited patterns get their agreed edits forked
  into a new pattern instead of mutating the original
- review_auto_executable: demotion sweep
"""

from __future__ import annotations

import json
from collections import Counter
from collections.abc import Iterator, Mapping
from datetime import timedelta
from typing import Any

from opspilot.infrastructure.database import write_quietly
from opspilot.matching.modules import ModuleRegistry
from opspilot.observability.logging import get_logger
from opspilot.observability.signals import SignalBus, SignalType
from opspilot.observability.telemetry import counter, log_event
from opspilot.runtime.policy import Policy
from opspilot.storage.models import (
    ExecutionOutcome,
    FailureSeverity,
    Pattern,
    PatternValidationError,
    merge_logic_changes,
    utc_now,
)
from opspilot.storage.repository import PatternStore

logger = get_logger(__name__)


class PatternNotFoundError(Exception):
    """Evolution was asked to update a pattern that does not exist."""

    pass


def classify_failure(error: BaseException | str | None) -> FailureSeverity:
    """critical in the message -> critical, timeouts -> major, anything else -> minor."""
    if isinstance(error, TimeoutError):
        return FailureSeverity.MAJOR
    text = str(error or "").lower()
    if "critical" in text:
        return FailureSeverity.CRITICAL
    if "timeout" in text or "timed out" in text:
        return FailureSeverity.MAJOR
    return FailureSeverity.MINOR


def classify_modification_type(changes: Mapping[str, Any] | None) -> str:
    if not changes:
        return "other"
    if "steps" in changes:
        return "workflow_change"
    if "parameters" in changes:
        return "parameter_adjustment"
    if "conditions" in changes:
        return "condition_change"
    return "other"


def _flatten(
    changes: Mapping[str, Any], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], str]]:
    """Leaf (path, json value) pairs; lists are compared whole."""
    for key, value in changes.items():
        path = (*prefix, str(key))
        if isinstance(value, Mapping) and value:
            yield from _flatten(value, path)
        else:
            yield path, json.dumps(value, sort_keys=True, default=str)


def _unflatten(items: Mapping[tuple[str, ...], Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for path, value in items.items():
        node = result
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = value
    return result


def common_changes(modifications: list[Mapping[str, Any]], agreement: float) -> dict[str, Any]:
    """
    Changes that at least `agreement` of the modifications made identically.

    Example:
        [{"parameters": {"a": 1}}, {"parameters": {"a": 1, "b": 2}}] at 0.6
        -> {"parameters": {"a": 1}}
    """
    if not modifications:
        return {}
    tally: Counter[tuple[tuple[str, ...], str]] = Counter()
    for changes in modifications:
        tally.update(set(_flatten(changes)))

    agreed = {
        path: json.loads(value)
        for (path, value), count in tally.items()
        if count / len(modifications) >= agreement
    }
    return _unflatten(agreed)


class ConfidenceEvolution:
    """Adjusts pattern confidence and eligibility from outcomes and edits."""

    def __init__(
        self,
        store: PatternStore,
        policy: Policy,
        signals: SignalBus,
        registry: ModuleRegistry | None = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.signals = signals
        self.registry = registry

    # ------------------------------------------------------------------
    # Per outcome
    # ------------------------------------------------------------------

    def on_outcome(self, outcome: ExecutionOutcome) -> None:
        """
        Learn from one execution outcome.

        Side Effects:
            - Updates patterns.confidence_score and confidence_changes
            - May flip patterns.auto_executable (promotion / demotion)
            - Records human modifications and may fork the pattern
            - Writes a cross-domain insight through the source module
        """
        pattern_id = outcome.pattern.id
        self.adjust_confidence(outcome)

        if outcome.human_modified and outcome.modifications:
            self.capture_modification(outcome)

        if outcome.success:
            self.check_promotion(pattern_id)
            if self.registry is not None:
                module = self.registry.get(outcome.pattern.source_module)
                if module is not None:
                    write_quietly("module learning", module.learn_from_outcome, outcome)
        self.check_demotion(pattern_id, outcome.failure_severity)

    def adjust_confidence(self, outcome: ExecutionOutcome) -> tuple[float, float]:
        """
        Returns:
            (old, new) confidence

        Raises:
            PatternNotFoundError: If the pattern row is gone
        """
        ev = self.policy.evolution
        pattern_id = outcome.pattern.id
        since = utc_now() - timedelta(days=ev.recent_window_days)
        recent = self.store.execution_window(pattern_id, since)

        if outcome.success:
            if outcome.human_modified:
                delta, reason = ev.modified_success_boost, "modified_success"
            else:
                delta, reason = ev.success_boost, "success"
                rate = recent.success_rate
                if rate is not None and rate > ev.high_success_rate:
                    delta *= ev.high_success_multiplier
                    reason = "success_streak"
            change = self.store.adjust_confidence(
                pattern_id, delta, ev.min_confidence, ev.max_confidence, reason
            )
        else:
            severity = outcome.failure_severity or classify_failure(outcome.error)
            penalty = {
                FailureSeverity.MINOR: ev.minor_failure_penalty,
                FailureSeverity.MAJOR: ev.major_failure_penalty,
                FailureSeverity.CRITICAL: ev.critical_failure_penalty,
            }[FailureSeverity(severity)]
            reason = f"failure_{FailureSeverity(severity).value}"
            if recent.failures > ev.repeat_failure_threshold:
                penalty *= ev.repeat_failure_multiplier
                reason += "_repeated"
            change = self.store.adjust_confidence(
                pattern_id, -penalty, ev.min_confidence, 1.0, reason
            )

        if change is None:
            raise PatternNotFoundError(pattern_id)
        logger.debug(
            "Pattern %s confidence %.3f -> %.3f (%s)", pattern_id, change[0], change[1], reason
        )
        return change

    def _require(self, pattern_id: str) -> Pattern:
        pattern = self.store.get_pattern(pattern_id)
        if pattern is None:
            raise PatternNotFoundError(pattern_id)
        return pattern

    def check_promotion(self, pattern_id: str) -> bool:
        """
        Promote to auto-executable when every threshold holds:
        confidence, volume over the promotion window, success rate, and no
        failures in the recent window.
        """
        ev = self.policy.evolution
        pattern = self._require(pattern_id)
        if pattern.auto_executable or pattern.confidence_score < ev.promotion_confidence:
            return False
        if pattern.execution_count < ev.promotion_min_executions:
            return False

        now = utc_now()
        since = now - timedelta(days=ev.promotion_window_days)
        window = self.store.execution_window(pattern_id, since)
        if window.total < ev.promotion_min_executions:
            return False
        if (window.success_rate or 0.0) < ev.promotion_success_rate:
            return False
        recent = self.store.execution_window(pattern_id, now - timedelta(days=ev.recent_window_days))
        if recent.failures > 0:
            return False

        if not self.store.set_auto_executable(pattern_id, True):
            return False
        counter("evolution.promoted")
        log_event(
            "pattern.promoted",
            pattern_id=pattern_id,
            confidence=pattern.confidence_score,
            executions=window.total,
        )
        self.signals.emit(
            SignalType.PATTERN_PROMOTED,
            pattern_id=pattern_id,
            confidence=pattern.confidence_score,
            success_rate=window.success_rate,
        )
        return True

    def demotion_reason(
        self, pattern: Pattern, failure_severity: FailureSeverity | str | None = None
    ) -> str | None:
        ev = self.policy.evolution
        if pattern.confidence_score < ev.demotion_confidence:
            return "low_confidence"
        since = utc_now() - timedelta(days=ev.recent_window_days)
        recent = self.store.execution_window(pattern.id, since)
        rate = recent.success_rate
        if rate is not None and rate < ev.demotion_success_rate:
            return "low_success_rate"
        if recent.failures > ev.demotion_recent_failures:
            return "recent_failures"
        if recent.critical_failures > 0 or failure_severity == FailureSeverity.CRITICAL:
            return "critical_failure"
        return None

    def check_demotion(
        self, pattern_id: str, failure_severity: FailureSeverity | str | None = None
    ) -> str | None:
        """
        Clear auto-executable when a demotion criterion holds.

        Pending suggestions that reference the pattern are left alone.

        Returns:
            The demotion reason, or None if the pattern stays as it is
        """
        pattern = self._require(pattern_id)
        if not pattern.auto_executable:
            return None
        reason = self.demotion_reason(pattern, failure_severity)
        if reason is None or not self.store.set_auto_executable(pattern_id, False):
            return None

        counter("evolution.demoted")
        logger.warning("Pattern %s demoted from auto-execution: %s", pattern_id, reason)
        self.signals.emit(
            SignalType.PATTERN_DEMOTED,
            pattern_id=pattern_id,
            reason=reason,
            confidence=pattern.confidence_score,
        )
        return reason

    # ------------------------------------------------------------------
    # Human modifications and forking
    # ------------------------------------------------------------------

    def capture_modification(self, outcome: ExecutionOutcome) -> None:
        changes = outcome.modifications or {}
        self.store.insert_modification(
            outcome.pattern.id,
            classify_modification_type(changes),
            changes,
            outcome.success,
            reference_id=outcome.reference_id,
            user_id=outcome.user_id,
        )
        self.check_fork(outcome.pattern.id)

    def check_fork(self, pattern_id: str) -> Pattern | None:
        """Flag a pattern with enough recent edits and try to fork the agreed ones."""
        ev = self.policy.evolution
        since = utc_now() - timedelta(days=ev.fork_window_days)
        if self.store.count_modifications(pattern_id, since) < ev.fork_min_modifications:
            return None
        if self.store.flag_for_evolution(pattern_id):
            logger.info("Pattern %s flagged for evolution analysis", pattern_id)
            counter("evolution.flagged")
        return self.materialize_fork(pattern_id)

    def materialize_fork(self, pattern_id: str) -> Pattern | None:
        """
        Create a child pattern carrying the edits most humans agreed on.

        The original is untouched. The fork starts below the auto threshold and
        must earn promotion on its own. An identical fork is never created twice.
        """
        ev = self.policy.evolution
        parent = self._require(pattern_id)
        since = utc_now() - timedelta(days=ev.fork_window_days)
        modifications = [m["changes"] for m in self.store.list_modifications(pattern_id, since)]

        changes = common_changes(modifications, ev.fork_agreement)
        if not changes:
            logger.debug(
                "Pattern %s: no agreed modification across %d edits", pattern_id, len(modifications)
            )
            return None

        try:
            logic = merge_logic_changes(parent.logic, changes)
        except PatternValidationError as e:
            logger.warning("Pattern %s: agreed modification does not validate: %s", pattern_id, e)
            return None

        fork = Pattern(
            decision_type=parent.decision_type,
            trigger_signature=parent.trigger_signature,
            logic=logic,
            confidence_score=ev.fork_confidence,
            auto_executable=False,
            source_module=parent.source_module,
            parent_pattern_id=parent.id,
        )
        if self.store.find_fork(parent.id, fork.to_db_dict()["logic"]) is not None:
            return None

        self.store.save_pattern(fork)
        counter("evolution.forked")
        log_event("pattern.forked", parent_id=parent.id, fork_id=fork.id, edits=len(modifications))
        self.signals.emit(
            SignalType.PATTERN_FORKED,
            pattern_id=fork.id,
            parent_pattern_id=parent.id,
            changes=changes,
        )
        return fork

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def apply_decay(self) -> int:
        """Decay every pattern idle longer than decay_idle_days; returns how many moved."""
        ev = self.policy.evolution
        decayed = self.store.decay_idle_patterns(
            utc_now() - timedelta(days=ev.decay_idle_days), ev.decay_amount, ev.decay_floor
        )
        log_event("evolution.decay", patterns=decayed, amount=ev.decay_amount)
        return decayed

    def evolve_patterns(self) -> list[Pattern]:
        """Fork patterns whose edit-to-execution ratio over the fork window is too high."""
        ev = self.policy.evolution
        since = utc_now() - timedelta(days=ev.fork_window_days)
        forks = []
        for pattern_id, modifications, executions in self.store.modification_ratios(since):
            ratio = modifications / max(executions, 1)
            if ratio <= ev.evolution_modification_ratio:
                continue
            self.store.flag_for_evolution(pattern_id)
            try:
                fork = self.materialize_fork(pattern_id)
            except PatternNotFoundError:
                logger.warning("Modifications reference missing pattern %s", pattern_id)
                continue
            if fork is not None:
                forks.append(fork)
        log_event("evolution.evolve", forks=len(forks))
        return forks

    def review_auto_executable(self) -> list[tuple[str, str]]:
        """Demotion sweep; returns (pattern_id, reason) for every demoted pattern."""
        demoted = []
        for pattern in self.store.list_patterns(auto_executable=True):
            reason = self.check_demotion(pattern.id)
            if reason is not None:
                demoted.append((pattern.id, reason))
        return demoted
