"""
Pytest configuration for OpsPilot tests

Provides fixtures shared across unit and integration tests: a throwaway
SQLite database per test, the default policy, and a fully wired engine whose
outbound collaborators only record what they were asked to do.
"""

from __future__ import annotations

from typing import Any

import pytest

from opspilot.automation.collaborators import LoggingNotifier, RecordingActionExecutor
from opspilot.automation.engine import AutomationEngine
from opspilot.infrastructure.database import Database
from opspilot.observability import telemetry
from opspilot.observability.signals import SignalBus
from opspilot.runtime.policy import Policy
from opspilot.storage.models import Pattern
from opspilot.storage.repository import PatternStore


@pytest.fixture(autouse=True)
def reset_telemetry():
    """Counters are process-global; start every test from zero"""
    telemetry.reset()
    yield
    telemetry.reset()


@pytest.fixture
def database(tmp_path):
    """Fresh pattern store database in a temp directory"""
    db = Database(tmp_path / "opspilot-test.db", pool_size=2)
    yield db
    db.close()


@pytest.fixture
def store(database):
    return PatternStore(database)


@pytest.fixture
def policy():
    """Built-in defaults (same values as config/opspilot_policy.yaml)"""
    return Policy()


@pytest.fixture
def signals():
    return SignalBus()


@pytest.fixture
def received_signals(signals):
    """List of (signal, payload) tuples captured from the shared bus"""
    received: list[tuple[Any, dict[str, Any]]] = []
    signals.subscribe(None, lambda signal, payload: received.append((signal, payload)))
    return received


@pytest.fixture
def action_executor():
    return RecordingActionExecutor()


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def engine(database, policy, signals, action_executor, notifier):
    """Engine wired to the temp database with recording collaborators"""
    automation = AutomationEngine(
        database,
        policy,
        signals=signals,
        action_executor=action_executor,
        notifier=notifier,
        max_workers=2,
    )
    yield automation
    automation.close()


@pytest.fixture
def make_pattern(store):
    """
    Factory that saves and returns a pattern.

    Defaults describe a maintenance pattern no domain module claims, so the
    store lookup is its only match and match confidence equals confidence_score.
    """

    def _make(**overrides: Any) -> Pattern:
        fields: dict[str, Any] = {
            "decision_type": "maintenance",
            "trigger_signature": "maintenance",
            "logic": {"type": "action", "action": {"name": "open_ticket", "target": "facilities"}},
            "confidence_score": 0.8,
        }
        fields.update(overrides)
        return store.save_pattern(Pattern(**fields))

    return _make
