"""
Domain models for pattern automation.

Durable records (Pattern, ExecutionRecord, ApprovalQueueEntry, Anomaly) carry
to_db_dict/from_db_row for the SQLite store. Pattern logic is a closed union of
typed payloads validated when a pattern is loaded, not when it runs.
"""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


# Error prefix of the failure note written when preconditions do not hold;
# such notes are not executions and stay out of window statistics
PRECONDITION_ERROR_PREFIX = "precondition: "


class PatternValidationError(ValueError):
    """Pattern logic payload failed typed validation."""

    pass


# ============================================================================
# ENUMS
# ============================================================================


class LogicType(str, Enum):
    FUNCTION = "function"
    SEQUENCE = "sequence"
    API_CALL = "api_call"
    ACTION = "action"
    ACTION_LIST = "action_list"
    PASSTHROUGH = "passthrough"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class FailureSeverity(str, Enum):
    MINOR = "minor"
    MAJOR = "major"  # timeouts
    CRITICAL = "critical"


class QueueStatus(str, Enum):
    """Approval queue entry lifecycle. approved/rejected are terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AnomalyType(str, Enum):
    NEW_PATTERN = "new_pattern"
    EDGE_CASE = "edge_case"
    UNUSUAL_CONTEXT = "unusual_context"
    SECURITY_THREAT = "security_threat"
    DATA_QUALITY = "data_quality"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3, Severity.CRITICAL: 4}


# ============================================================================
# PATTERN LOGIC (closed tagged union)
# ============================================================================


class _LogicModel(BaseModel):
    """Accepts snake_case or camelCase keys; rejects unknown keys."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True
    )


ConditionOperator = Literal[
    "eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in", "exists", "missing", "contains"
]


class Condition(_LogicModel):
    """Precondition on an event field, e.g. context.membership_days gte 30."""

    field: str
    operator: ConditionOperator = "eq"
    value: Any = None
    failure_message: str | None = None


class ActionDescriptor(_LogicModel):
    """What the action collaborator should do; how it is done is not our concern."""

    name: str
    target: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class SideEffect(_LogicModel):
    kind: Literal["action", "notify", "log"] = "log"
    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class TemporalProfile(_LogicModel):
    """Hours (0-23) and weekdays (Monday=0) when the pattern historically fires."""

    typical_hours: list[int] = Field(default_factory=list)
    typical_days: list[int] = Field(default_factory=list)


class _LogicBase(_LogicModel):
    conditions: list[Condition] = Field(default_factory=list)
    side_effects: list[SideEffect] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    temporal_context: TemporalProfile | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    reasoning: str | None = None
    message: str | None = None


class FunctionLogic(_LogicBase):
    type: Literal["function"] = "function"
    handler: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class ApiCallLogic(_LogicBase):
    type: Literal["api_call"] = "api_call"
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, Any] = Field(default_factory=dict)
    body: dict[str, Any] | None = None
    include_event: bool = False
    timeout_seconds: float | None = None

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class ActionLogic(_LogicBase):
    type: Literal["action"] = "action"
    action: ActionDescriptor

    @field_validator("action", mode="before")
    @classmethod
    def action_from_name(cls, v: Any) -> Any:
        return {"name": v} if isinstance(v, str) else v


class ActionListLogic(_LogicBase):
    type: Literal["action_list"] = "action_list"
    actions: list[ActionDescriptor] = Field(min_length=1)
    stop_on_failure: bool = True

    @field_validator("actions", mode="before")
    @classmethod
    def actions_from_names(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [{"name": item} if isinstance(item, str) else item for item in v]
        return v


SequenceStep = Annotated[
    Union[FunctionLogic, ApiCallLogic, ActionLogic, ActionListLogic],
    Field(discriminator="type"),
]


class SequenceLogic(_LogicBase):
    type: Literal["sequence"] = "sequence"
    steps: list[SequenceStep] = Field(min_length=1)

    @field_validator("steps", mode="before")
    @classmethod
    def normalize_steps(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [_normalize_logic_dict(step) if isinstance(step, Mapping) else step for step in v]
        return v


class PassthroughLogic(_LogicBase):
    """Declarative pattern: executing it returns the payload itself."""

    type: Literal["passthrough"] = "passthrough"
    payload: dict[str, Any] = Field(default_factory=dict)


Logic = Annotated[
    Union[
        FunctionLogic,
        SequenceLogic,
        ApiCallLogic,
        ActionLogic,
        ActionListLogic,
        PassthroughLogic,
    ],
    Field(discriminator="type"),
]

_LOGIC_ADAPTER: TypeAdapter[Any] = TypeAdapter(Logic)

_TYPE_ALIASES = {
    "apicall": LogicType.API_CALL.value,
    "api_call": LogicType.API_CALL.value,
    "actionlist": LogicType.ACTION_LIST.value,
    "action_list": LogicType.ACTION_LIST.value,
}
_COMMON_KEYS = {
    "conditions",
    "sideEffects",
    "side_effects",
    "context",
    "temporalContext",
    "temporal_context",
    "attributes",
    "reasoning",
    "message",
}


def _normalize_logic_dict(raw: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(raw)
    tag = data.get("type")
    if isinstance(tag, str):
        data["type"] = _TYPE_ALIASES.get(tag.replace("-", "_").lower(), tag)
    elif "actions" in data and isinstance(data["actions"], list):
        data["type"] = LogicType.ACTION_LIST.value
    return data


def parse_logic(raw: Any) -> Any:
    """
    Validate a logic payload into its typed model.

    Unknown or absent tags become PassthroughLogic carrying the raw payload, with
    the shared fields (conditions, side effects, context...) still honoured.

    Raises:
        PatternValidationError: If a known tag carries invalid parameters
    """
    if isinstance(raw, _LogicBase):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PatternValidationError(f"Logic is not valid JSON: {e}") from e
    if not isinstance(raw, Mapping):
        raise PatternValidationError(f"Logic must be an object, got {type(raw).__name__}")

    data = _normalize_logic_dict(raw)
    known = {t.value for t in LogicType}
    if data.get("type") not in known:
        common = {k: v for k, v in data.items() if k in _COMMON_KEYS}
        data = {**common, "type": LogicType.PASSTHROUGH.value, "payload": dict(raw)}

    try:
        return _LOGIC_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise PatternValidationError(f"Invalid {data.get('type')} logic: {e}") from e


def _deep_merge(base: dict[str, Any], changes: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_logic_changes(logic: Any, changes: Mapping[str, Any]) -> Any:
    """Return a new logic model with human changes merged in (original untouched)."""
    base = logic.model_dump(mode="json")
    changes = dict(changes)
    if "type" in changes:
        changes = _normalize_logic_dict(changes)
    return parse_logic(_deep_merge(base, changes))


# ============================================================================
# EVENT (transient input)
# ============================================================================

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


class Event(BaseModel):
    """Incoming operational event. Context keys are normalized to snake_case."""

    model_config = ConfigDict(extra="ignore")

    kind: str = ""
    category: str | None = None
    action: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    urgent: bool = False

    _quality_issues: list[str] = PrivateAttr(default_factory=list)

    @property
    def quality_issues(self) -> list[str]:
        return list(self._quality_issues)

    def get_path(self, path: str) -> Any:
        """Resolve a dotted path such as 'context.location' or 'kind'."""
        parts = path.split(".")
        current: Any = self.model_dump() if parts[0] != "context" else {"context": self.context}
        for part in parts:
            if isinstance(current, Mapping) and part in current:
                current = current[part]
            elif isinstance(current, Mapping) and to_snake(part) in current:
                current = current[to_snake(part)]
            else:
                return None
        return current

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


_EVENT_FIELDS = {"kind", "type", "category", "action", "context", "timestamp", "urgent"}


def coerce_event(raw: Any) -> Event:
    """
    Build an Event from loosely shaped input without raising.

    Missing or mistyped fields are recorded on event.quality_issues so the
    anomaly detector can report them as a data-quality finding.
    """
    if isinstance(raw, Event):
        return raw

    issues: list[str] = []
    if not isinstance(raw, Mapping):
        event = Event()
        event._quality_issues = ["invalid_data_types", "missing_required_fields"]
        return event

    kind = raw.get("kind", raw.get("type"))
    if kind is not None and not isinstance(kind, str):
        issues.append("invalid_data_types")
        kind = str(kind)

    context_raw = raw.get("context", {})
    if context_raw is None:
        context_raw = {}
    if not isinstance(context_raw, Mapping):
        issues.append("invalid_data_types")
        context_raw = {}
    context = {to_snake(str(k)): v for k, v in context_raw.items()}
    for key, value in raw.items():
        if key not in _EVENT_FIELDS:
            context.setdefault(to_snake(str(key)), value)

    timestamp = utc_now()
    if raw.get("timestamp") is not None:
        parsed = parse_timestamp(raw["timestamp"])
        if parsed is None:
            issues.append("invalid_data_types")
        else:
            timestamp = parsed

    def optional_str(name: str) -> str | None:
        value = raw.get(name)
        if value is None or isinstance(value, str):
            return value
        issues.append("invalid_data_types")
        return str(value)

    urgent = raw.get("urgent", False)
    if not isinstance(urgent, bool):
        issues.append("invalid_data_types")
        urgent = bool(urgent)

    event = Event(
        kind=(kind or "").strip(),
        category=optional_str("category"),
        action=optional_str("action"),
        context=context,
        timestamp=timestamp,
        urgent=urgent,
    )
    event._quality_issues = sorted(set(issues))
    return event


# ============================================================================
# PATTERN (durable)
# ============================================================================


class Pattern(BaseModel):
    """A persisted decision template with a confidence score and executable logic."""

    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(default_factory=new_id)
    decision_type: str
    trigger_signature: str
    logic: Logic
    confidence_score: float = 0.5
    auto_executable: bool = False
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_seen: datetime | None = None
    source_module: str = "general"
    parent_pattern_id: str | None = None
    evolution_flagged: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("logic", mode="before")
    @classmethod
    def typed_logic(cls, v: Any) -> Any:
        return parse_logic(v)

    @field_validator("confidence_score")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return clamp(v)

    @field_validator("trigger_signature", "decision_type")
    @classmethod
    def lower_key(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def success_rate(self) -> float:
        if self.execution_count <= 0:
            return 0.0
        return self.success_count / self.execution_count

    def with_logic_changes(self, changes: Mapping[str, Any]) -> Pattern:
        """Copy of this pattern with changes merged into its logic."""
        return self.model_copy(update={"logic": merge_logic_changes(self.logic, changes)})

    def to_db_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""
        return {
            "id": self.id,
            "decision_type": self.decision_type,
            "trigger_signature": self.trigger_signature,
            "logic": json.dumps(self.logic.model_dump(mode="json"), sort_keys=True),
            "confidence_score": self.confidence_score,
            "auto_executable": int(self.auto_executable),
            "execution_count": self.execution_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "source_module": self.source_module,
            "parent_pattern_id": self.parent_pattern_id,
            "evolution_flagged": int(self.evolution_flagged),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: Mapping[str, Any]) -> Pattern:
        """Create Pattern from database row."""
        return cls(
            id=row["id"],
            decision_type=row["decision_type"],
            trigger_signature=row["trigger_signature"],
            logic=json.loads(row["logic"]),
            confidence_score=row["confidence_score"],
            auto_executable=bool(row["auto_executable"]),
            execution_count=row["execution_count"],
            success_count=row["success_count"],
            failure_count=row["failure_count"],
            last_seen=parse_dt(row["last_seen"]),
            source_module=row["source_module"],
            parent_pattern_id=row["parent_pattern_id"],
            evolution_flagged=bool(row["evolution_flagged"]),
            created_at=parse_dt(row["created_at"]) or utc_now(),
            updated_at=parse_dt(row["updated_at"]) or utc_now(),
        )


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _loads(val: str | None, default: Any = None) -> Any:
    return json.loads(val) if val else default


# ============================================================================
# DURABLE RECORDS
# ============================================================================


class ExecutionRecord(BaseModel):
    """Append-only outcome of one execution attempt."""

    model_config = ConfigDict(use_enum_values=True)

    id: int | None = None
    pattern_id: str
    reference_id: str | None = None
    event_snapshot: dict[str, Any] = Field(default_factory=dict)
    confidence_at_execution: float = 1.0
    was_auto_executed: bool = False
    was_modified: bool = False
    status: ExecutionStatus
    duration_ms: int = 0
    result: Any = None
    error: str | None = None
    failure_severity: FailureSeverity | None = None
    executed_at: datetime = Field(default_factory=utc_now)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "pattern_id": self.pattern_id,
            "reference_id": self.reference_id,
            "event_snapshot": json.dumps(self.event_snapshot, default=str),
            "confidence_at_execution": self.confidence_at_execution,
            "was_auto_executed": int(self.was_auto_executed),
            "was_modified": int(self.was_modified),
            "status": self.status,
            "duration_ms": self.duration_ms,
            "result": json.dumps(self.result, default=str) if self.result is not None else None,
            "error": self.error,
            "failure_severity": self.failure_severity,
            "executed_at": self.executed_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: Mapping[str, Any]) -> ExecutionRecord:
        return cls(
            id=row["id"],
            pattern_id=row["pattern_id"],
            reference_id=row["reference_id"],
            event_snapshot=_loads(row["event_snapshot"], {}),
            confidence_at_execution=row["confidence_at_execution"],
            was_auto_executed=bool(row["was_auto_executed"]),
            was_modified=bool(row["was_modified"]),
            status=ExecutionStatus(row["status"]),
            duration_ms=row["duration_ms"],
            result=_loads(row["result"]),
            error=row["error"],
            failure_severity=FailureSeverity(row["failure_severity"])
            if row["failure_severity"]
            else None,
            executed_at=parse_dt(row["executed_at"]) or utc_now(),
        )


class ApprovalQueueEntry(BaseModel):
    """A low-confidence match awaiting a human verdict."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=new_id)
    pattern_id: str
    event_snapshot: dict[str, Any] = Field(default_factory=dict)
    confidence: float
    reasoning: str | None = None
    status: QueueStatus = QueueStatus.PENDING
    decided_by: str | None = None
    decided_at: datetime | None = None
    decision_reason: str | None = None
    modifications: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return clamp(v)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pattern_id": self.pattern_id,
            "event_snapshot": json.dumps(self.event_snapshot, default=str),
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "status": self.status,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "decision_reason": self.decision_reason,
            "modifications": json.dumps(self.modifications) if self.modifications else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: Mapping[str, Any]) -> ApprovalQueueEntry:
        return cls(
            id=row["id"],
            pattern_id=row["pattern_id"],
            event_snapshot=_loads(row["event_snapshot"], {}),
            confidence=row["confidence"],
            reasoning=row["reasoning"],
            status=QueueStatus(row["status"]),
            decided_by=row["decided_by"],
            decided_at=parse_dt(row["decided_at"]),
            decision_reason=row["decision_reason"],
            modifications=_loads(row["modifications"]),
            created_at=parse_dt(row["created_at"]) or utc_now(),
        )


class AnomalyFinding(BaseModel):
    """Result of one anomaly check."""

    model_config = ConfigDict(use_enum_values=False)

    type: AnomalyType
    severity: Severity
    confidence: float
    reason: str
    requires_human: bool = False
    requires_immediate: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class Anomaly(BaseModel):
    """An event the engine declined to automate."""

    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(default_factory=new_id)
    types: list[AnomalyType]
    severity: Severity
    confidence: float
    risk_level: Severity = Severity.LOW
    reasons: list[str] = Field(default_factory=list)
    event_snapshot: dict[str, Any] = Field(default_factory=dict)
    requires_human: bool = False
    requires_immediate: bool = False
    escalated: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return clamp(v)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "types": json.dumps([t.value for t in self.types]),
            "severity": self.severity.value,
            "confidence": self.confidence,
            "risk_level": self.risk_level.value,
            "reasons": json.dumps(self.reasons),
            "event_snapshot": json.dumps(self.event_snapshot, default=str),
            "requires_human": int(self.requires_human),
            "requires_immediate": int(self.requires_immediate),
            "escalated": int(self.escalated),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: Mapping[str, Any]) -> Anomaly:
        return cls(
            id=row["id"],
            types=[AnomalyType(t) for t in json.loads(row["types"])],
            severity=Severity(row["severity"]),
            confidence=row["confidence"],
            risk_level=Severity(row["risk_level"] or "low"),
            reasons=json.loads(row["reasons"]),
            event_snapshot=_loads(row["event_snapshot"], {}),
            requires_human=bool(row["requires_human"]),
            requires_immediate=bool(row["requires_immediate"]),
            escalated=bool(row["escalated"]),
            created_at=parse_dt(row["created_at"]) or utc_now(),
        )


# ============================================================================
# MATCH (transient)
# ============================================================================


@dataclass
class MatchBreakdown:
    """Weighted contribution of each scoring component, before the confidence multiplier."""

    exact: float = 0.0
    context: float = 0.0
    semantic: float = 0.0
    temporal: float = 0.0
    history: float = 0.0

    @property
    def total(self) -> float:
        return self.exact + self.context + self.semantic + self.temporal + self.history

    def as_dict(self) -> dict[str, float]:
        return {
            "exact": round(self.exact, 4),
            "context": round(self.context, 4),
            "semantic": round(self.semantic, 4),
            "temporal": round(self.temporal, 4),
            "history": round(self.history, 4),
        }


@dataclass
class Match:
    """A scored pairing of one event against one candidate pattern."""

    pattern: Pattern
    event: Event
    confidence: float
    source: str
    breakdown: MatchBreakdown = field(default_factory=MatchBreakdown)

    def __post_init__(self) -> None:
        self.confidence = clamp(self.confidence)

    @property
    def dedupe_key(self) -> tuple[str, str]:
        return (self.pattern.id, self.source)

    def describe(self) -> dict[str, Any]:
        return {
            "pattern_id": self.pattern.id,
            "source": self.source,
            "confidence": round(self.confidence, 4),
            "breakdown": self.breakdown.as_dict(),
        }


@dataclass
class ExecutionOutcome:
    """What happened when a pattern ran; handed to learning after every execution."""

    pattern: Pattern
    event: Event
    success: bool
    confidence: float
    result: Any = None
    error: str | None = None
    failure_severity: FailureSeverity | None = None
    was_auto_executed: bool = False
    human_modified: bool = False
    modifications: dict[str, Any] | None = None
    reference_id: str | None = None
    user_id: str | None = None
    duration_ms: int = 0
