"""
Automation Engine - entry point for operational events.

    event -> classify -> anomaly pre-check -> pattern search -> router
          -> execute | suggest | approval queue | anomaly
          -> outcome -> confidence evolution

The engine is an explicitly constructed object that owns its module registry,
store, signal bus and timers. Nothing is global, so several engines (with
different policies or databases) can live in one process.

Usage:
    engine = AutomationEngine(Database("ops.db"))
    result = engine.process_event({"kind": "booking", "context": {...}})
    if result.type == "suggestion":
        result.approve(user_id="front-desk")
    engine.close()
"""

from __future__ import annotations

from typing import Any

from opspilot.anomaly.detector import AnomalyDetector
from opspilot.automation.approvals import ApprovalQueue
from opspilot.automation.collaborators import (
    ActionExecutor,
    HandlerRegistry,
    Notifier,
    RequestsApiCaller,
)
from opspilot.automation.executor import ExecutionEngine, PatternExecutionError
from opspilot.automation.results import AnomalyResult, ProcessResult
from opspilot.automation.router import AutomationRouter, RoutingDecision, Tier
from opspilot.automation.suggestions import SuggestionTimer
from opspilot.config import SEARCH_MAX_WORKERS, SEARCH_MODULE_TIMEOUT
from opspilot.infrastructure.database import Database, write_quietly
from opspilot.learning.evolution import ConfidenceEvolution
from opspilot.matching.modules import ModuleRegistry
from opspilot.matching.search import PatternSearch, classify_event
from opspilot.observability.logging import get_logger
from opspilot.observability.signals import SignalBus, SignalType
from opspilot.observability.telemetry import counter, time_block
from opspilot.runtime.policy import Policy, load_policy
from opspilot.storage.models import Anomaly, Event, Pattern, coerce_event
from opspilot.storage.repository import PatternStore

logger = get_logger(__name__)


class AutomationEngine:
    """Routes events to execution, suggestion, approval or anomaly handling."""

    def __init__(
        self,
        database: Database | None = None,
        policy: Policy | None = None,
        *,
        signals: SignalBus | None = None,
        registry: ModuleRegistry | None = None,
        action_executor: ActionExecutor | None = None,
        notifier: Notifier | None = None,
        handlers: HandlerRegistry | None = None,
        api_caller: RequestsApiCaller | None = None,
        max_workers: int = SEARCH_MAX_WORKERS,
        module_timeout: float = SEARCH_MODULE_TIMEOUT,
    ) -> None:
        self._owns_database = database is None
        self.database = database or Database()
        self.policy = policy or load_policy()
        self.store = PatternStore(self.database)
        self.signals = signals or SignalBus()
        self.registry = registry or ModuleRegistry.with_defaults(self.store, self.policy)

        self.search = PatternSearch(
            self.store, self.registry, max_workers=max_workers, module_timeout=module_timeout
        )
        self.router = AutomationRouter(self.policy.routing)
        self.executor = ExecutionEngine(
            self.store,
            self.policy,
            self.signals,
            action_executor=action_executor,
            handlers=handlers,
            api_caller=api_caller,
        )
        self.evolution = ConfidenceEvolution(self.store, self.policy, self.signals, self.registry)
        self.executor.add_outcome_listener(self.evolution.on_outcome)
        self.suggestions = SuggestionTimer(self.executor, self.store, self.policy, self.signals)
        self.approvals = ApprovalQueue(self.executor, self.store, self.policy, self.signals)
        self.detector = AnomalyDetector(self.store, self.policy, self.signals, notifier=notifier)

    def add_pattern(self, pattern: Pattern) -> Pattern:
        return self.store.save_pattern(pattern)

    def process_event(self, raw: Any) -> ProcessResult:
        """
        Route one event.

        Malformed input never raises; it comes back as a data-quality anomaly.

        Returns:
            ExecutedResult | SuggestionResult | ApprovalRequiredResult | AnomalyResult

        Raises:
            PatternExecutionError: The auto tier ran the pattern and it failed

        Side Effects:
            - Appends an event_log row
            - Emits received / processed plus tier-specific signals
        """
        counter("engine.events_received")
        event = coerce_event(raw)
        write_quietly("event log", self.store.append_event_log, event)
        self.signals.emit(
            SignalType.RECEIVED, kind=event.kind, category=event.category, action=event.action
        )

        try:
            with time_block("engine.process_ms"):
                result = self._process(event)
        except PatternExecutionError as e:
            self.signals.emit(SignalType.PROCESSED, kind=event.kind, result="error", error=str(e))
            raise

        self.signals.emit(SignalType.PROCESSED, kind=event.kind, result=result.type)
        return result

    def _process(self, event: Event) -> ProcessResult:
        classification = classify_event(event)

        anomaly = self.detector.pre_check(event)
        if anomaly is not None:
            logger.info(
                "Event %s vetoed by anomaly pre-check: %s", classification, "; ".join(anomaly.reasons)
            )
            counter("router.tier.anomaly")
            return self._anomaly_result(anomaly)

        matches = self.search.search(event, classification)
        decision = self.router.route(matches)
        return self._dispatch(decision, event)

    def _dispatch(self, decision: RoutingDecision, event: Event) -> ProcessResult:
        match = decision.match
        if decision.tier is Tier.ANOMALY or match is None:
            anomaly = self.detector.assess(event, match, decision.reason or "no_matching_pattern")
            return self._anomaly_result(anomaly)

        if decision.tier is Tier.EXECUTE:
            return self.executor.execute(
                match.pattern, event, match.confidence, was_auto_executed=True
            )
        if decision.tier is Tier.SUGGEST:
            return self.suggestions.create(match)
        return self.approvals.queue(
            match,
            reasoning=f"confidence {match.confidence:.2f} from {match.source} needs approval",
        )

    @staticmethod
    def _anomaly_result(anomaly: Anomaly) -> AnomalyResult:
        return AnomalyResult(
            severity=anomaly.severity,
            reasons=list(anomaly.reasons),
            escalated=anomaly.escalated,
            anomaly_id=anomaly.id,
            types=[t.value for t in anomaly.types],
            requires_human=anomaly.requires_human,
        )

    def close(self) -> None:
        """Cancel pending countdowns and stop the search pool."""
        self.suggestions.cancel_all()
        self.search.close()
        if self._owns_database:
            self.database.close()

    def __enter__(self) -> AutomationEngine:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
