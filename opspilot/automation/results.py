"""
Tagged results returned by AutomationEngine.process_event and by the
suggestion/approval handles.

Every result carries a `type` tag and serializes through as_dict() (handles
are dropped from the dict form since they are live callables).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from opspilot.storage.models import Severity

EXECUTED = "executed"
SUGGESTION = "suggestion"
APPROVAL_REQUIRED = "approval_required"
ANOMALY = "anomaly"
REJECTED = "rejected"
NOT_FOUND = "not_found"


@dataclass
class ExecutedResult:
    success: bool
    result: Any = None
    pattern_id: str | None = None
    confidence: float | None = None
    was_auto_executed: bool = False
    was_approved: bool = False
    was_modified: bool = False
    validation_error: str | None = None
    type: str = field(default=EXECUTED, init=False)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "success": self.success,
            "result": self.result,
            "pattern_id": self.pattern_id,
            "confidence": self.confidence,
            "was_auto_executed": self.was_auto_executed,
            "was_approved": self.was_approved,
            "was_modified": self.was_modified,
        }
        if self.validation_error:
            data["validation_error"] = self.validation_error
        return data


@dataclass
class SuggestionResult:
    """Medium-confidence match counting down to auto-execution."""

    id: str
    confidence: float
    timeout_ms: int
    pattern_id: str
    approve: Callable[..., Any]
    reject: Callable[..., Any]
    modify: Callable[..., Any]
    type: str = field(default=SUGGESTION, init=False)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "confidence": self.confidence,
            "timeout_ms": self.timeout_ms,
            "pattern_id": self.pattern_id,
        }


@dataclass
class ApprovalRequiredResult:
    """Low-confidence match parked in the durable approval queue."""

    id: str
    confidence: float
    pattern_id: str
    approve: Callable[..., Any]
    reject: Callable[..., Any]
    modify: Callable[..., Any]
    type: str = field(default=APPROVAL_REQUIRED, init=False)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "confidence": self.confidence,
            "pattern_id": self.pattern_id,
        }


@dataclass
class AnomalyResult:
    severity: Severity
    reasons: list[str]
    escalated: bool
    anomaly_id: str | None = None
    types: list[str] = field(default_factory=list)
    requires_human: bool = False
    type: str = field(default=ANOMALY, init=False)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "reasons": list(self.reasons),
            "escalated": self.escalated,
            "anomaly_id": self.anomaly_id,
            "types": list(self.types),
            "requires_human": self.requires_human,
        }


@dataclass
class RejectedResult:
    id: str
    pattern_id: str
    reason: str | None = None
    type: str = field(default=REJECTED, init=False)

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id, "pattern_id": self.pattern_id, "reason": self.reason}


@dataclass
class NotFoundResult:
    """A suggestion that was already resolved or fired."""

    id: str
    type: str = field(default=NOT_FOUND, init=False)

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id}


ProcessResult = ExecutedResult | SuggestionResult | ApprovalRequiredResult | AnomalyResult
