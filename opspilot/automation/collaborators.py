"""
Outbound collaborators of the execution engine.

The engine only knows these contracts. Physical connectors (door controllers,
CRM, SMS) live behind ActionExecutor; escalation fan-out lives behind
Notifier. The defaults here log and record, which is what the CLI and tests use.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, Protocol

import requests

from opspilot.config import API_CALL_TIMEOUT_SECONDS
from opspilot.observability.logging import get_logger
from opspilot.storage.models import ActionDescriptor, Anomaly, ApiCallLogic, Event

logger = get_logger(__name__)

Handler = Callable[[Event, dict[str, Any]], Any]


class ActionExecutor(Protocol):
    """Performs one action descriptor; retries and backoff are its own business."""

    def execute(self, action: ActionDescriptor, event: Event) -> dict[str, Any]:
        """
        Run the action.

        Returns:
            {"status": "success" | "failure", "result": Any}
        """
        ...


class Notifier(Protocol):
    """Fire-and-forget signal for escalated anomalies."""

    def notify(self, anomaly: Anomaly) -> None: ...


class RecordingActionExecutor:
    """Accepts every action and keeps a record of what would have run."""

    def __init__(self) -> None:
        self.calls: list[tuple[ActionDescriptor, Event]] = []
        self._lock = threading.Lock()

    def execute(self, action: ActionDescriptor, event: Event) -> dict[str, Any]:
        with self._lock:
            self.calls.append((action, event))
        logger.info("Action %s -> %s", action.name, action.target or "-")
        return {
            "status": "success",
            "result": {"action": action.name, "target": action.target, **action.parameters},
        }


class LoggingNotifier:
    def __init__(self) -> None:
        self.notified: list[str] = []

    def notify(self, anomaly: Anomaly) -> None:
        self.notified.append(anomaly.id)
        logger.warning(
            "Escalated anomaly %s severity=%s reasons=%s",
            anomaly.id,
            anomaly.severity.value,
            "; ".join(anomaly.reasons),
        )


class HandlerRegistry:
    """Named handlers for `function` logic; a handler takes (event, parameters)."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        self._handlers[name] = handler

    def get(self, name: str) -> Handler | None:
        return self._handlers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers


class RequestsApiCaller:
    """
    Performs `api_call` logic over HTTP.

    Non-2xx responses raise requests.HTTPError; the caller records the failure.
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        self.session = session or requests.Session()

    def call(self, logic: ApiCallLogic, event: Event) -> Any:
        body = dict(logic.body or {})
        if logic.include_event:
            body["event"] = event.snapshot()

        response = self.session.request(
            logic.method,
            logic.url,
            headers=logic.headers or None,
            params=logic.params or None,
            json=body or None,
            timeout=logic.timeout_seconds or API_CALL_TIMEOUT_SECONDS,
        )
        response.raise_for_status()

        if "application/json" in response.headers.get("Content-Type", ""):
            return response.json()
        return {"status_code": response.status_code, "text": response.text}
