"""
Lifecycle signals emitted by the automation engine.

The engine owns one SignalBus and writes to it at each lifecycle step.
Subscribers (UI push, metrics, notification fan-out) are optional: with zero
subscribers every emit is a no-op, and a subscriber that raises is logged
and skipped so it can never change a routing decision.

Usage:
    bus = SignalBus()
    bus.subscribe(SignalType.ANOMALY_ESCALATED, lambda signal, payload: page(payload))
    bus.emit(SignalType.ANOMALY_ESCALATED, anomaly_id="...", severity="critical")
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

from opspilot.observability.logging import get_logger
from opspilot.observability.telemetry import counter

logger = get_logger(__name__)


class SignalType(str, Enum):
    """Signal taxonomy covering one event's trip through the engine"""

    # Intake
    RECEIVED = "received"
    PROCESSED = "processed"

    # Tiers
    SUGGESTION_CREATED = "suggestionCreated"
    SUGGESTION_REJECTED = "suggestionRejected"
    SUGGESTION_TIMEOUT_EXECUTED = "suggestionTimeoutExecuted"
    APPROVAL_QUEUED = "approvalQueued"
    APPROVAL_APPROVED = "approvalApproved"
    APPROVAL_REJECTED = "approvalRejected"

    # Anomalies
    ANOMALY_DETECTED = "anomalyDetected"
    ANOMALY_ESCALATED = "anomalyEscalated"

    # Execution
    EXECUTION_START = "executionStart"
    EXECUTION_SUCCESS = "executionSuccess"
    EXECUTION_FAILURE = "executionFailure"

    # Learning
    PATTERN_PROMOTED = "patternPromoted"
    PATTERN_DEMOTED = "patternDemoted"
    PATTERN_FORKED = "patternForked"


Subscriber = Callable[[SignalType, dict[str, Any]], None]

# Wildcard key: subscribers registered under None receive every signal
_ALL = None


class SignalBus:
    """Explicit observer list keyed by signal type."""

    def __init__(self) -> None:
        self._subscribers: dict[SignalType | None, list[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, signal: SignalType | None, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback for one signal type, or for all signals when signal is None.

        Returns:
            Function that removes the subscription
        """
        with self._lock:
            self._subscribers.setdefault(signal, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(signal, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def emit(self, signal: SignalType, **payload: Any) -> None:
        """
        Deliver a signal to matching subscribers.

        Side Effects:
            - Invokes subscriber callbacks synchronously on the calling thread
            - Logs (and counts) subscriber failures without propagating them
        """
        with self._lock:
            callbacks = list(self._subscribers.get(signal, ())) + list(
                self._subscribers.get(_ALL, ())
            )

        for callback in callbacks:
            try:
                callback(signal, payload)
            except Exception as e:
                counter("signals.subscriber_failed")
                logger.warning("Signal subscriber failed for %s: %s", signal.value, e)

    def subscriber_count(self, signal: SignalType | None = None) -> int:
        with self._lock:
            if signal is None:
                return sum(len(cbs) for cbs in self._subscribers.values())
            return len(self._subscribers.get(signal, ()))
