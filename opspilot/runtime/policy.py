"""
Automation Policy Configuration

Every tunable number the engine uses to route, score, learn and flag anomalies.
The values are loaded from config/opspilot_policy.yaml; anything the file omits
falls back to the defaults declared on the models below. Routing thresholds can
additionally be overridden through the environment (see opspilot.config).

Policies are plain objects passed to the components that need them, so two
engines in one process can run with different thresholds.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict, Field

from opspilot import config
from opspilot.observability.logging import get_logger

logger = get_logger(__name__)

POLICY_FILENAME = "opspilot_policy.yaml"


class RoutingPolicy(BaseModel):
    """Confidence tiers and execution-time penalties."""

    model_config = ConfigDict(extra="forbid")

    auto_execute_threshold: float = config.PATTERN_CONFIDENCE_HIGH
    suggest_threshold: float = config.PATTERN_CONFIDENCE_MEDIUM
    approval_threshold: float = config.PATTERN_CONFIDENCE_LOW
    suggestion_timeout_ms: int = config.PATTERN_TIMEOUT_MS
    execution_failure_penalty: float = 0.05
    rejection_penalty: float = 0.02
    confidence_floor: float = 0.1


class SimilarityPolicy(BaseModel):
    """Weights for the five match components."""

    model_config = ConfigDict(extra="forbid")

    exact_weight: float = 1.0
    partial_signature_factor: float = 0.5
    context_weight: float = 0.3
    semantic_weight: float = 0.2
    temporal_weight: float = 0.1
    history_weight: float = 0.2
    default_semantic_score: float = 0.5
    default_temporal_score: float = 0.5


class EvolutionPolicy(BaseModel):
    """Confidence adjustment, promotion, demotion, decay and forking."""

    model_config = ConfigDict(extra="forbid")

    success_boost: float = 0.05
    modified_success_boost: float = 0.02
    high_success_rate: float = 0.95
    high_success_multiplier: float = 1.5
    max_confidence: float = 0.99
    min_confidence: float = 0.1

    minor_failure_penalty: float = 0.05
    major_failure_penalty: float = 0.15
    critical_failure_penalty: float = 0.30
    repeat_failure_threshold: int = 3
    repeat_failure_multiplier: float = 2.0

    promotion_confidence: float = 0.95
    promotion_min_executions: int = 20
    promotion_success_rate: float = 0.90
    promotion_window_days: int = 30
    recent_window_days: int = 7

    demotion_confidence: float = 0.80
    demotion_success_rate: float = 0.70
    demotion_recent_failures: int = 5

    decay_amount: float = 0.01
    decay_floor: float = 0.5
    decay_idle_days: int = 7

    fork_min_modifications: int = 5
    fork_window_days: int = 30
    evolution_modification_ratio: float = 0.2
    fork_agreement: float = 0.6
    fork_confidence: float = 0.75


class AnomalyPolicy(BaseModel):
    """Magnitude thresholds for the five anomaly checks."""

    model_config = ConfigDict(extra="forbid")

    new_pattern_max_confidence: float = 0.3
    sensitive_modules: list[str] = Field(default_factory=lambda: ["payment", "access", "security"])

    amount_min: float = 0.0
    amount_max: float = 10000.0
    duration_min: float = 0.0
    duration_max: float = 86400.0
    content_min_length: int = 1
    content_max_length: int = 1000
    rare_combination_max_occurrences: int = 5
    edge_case_min_indicators: int = 2
    edge_case_high_indicators: int = 3

    enforce_business_hours: bool = False
    business_hours_start: int = 8
    business_hours_end: int = 20
    frequency_limit: int = 50
    frequency_window_minutes: int = 60
    behavior_distinct_kinds: int = 5
    behavior_max_attempts: int = 3
    system_recent_anomalies: int = 10
    system_window_minutes: int = 15
    context_min_indicators: int = 2

    required_fields: list[str] = Field(default_factory=lambda: ["kind"])


class Policy(BaseModel):
    """Complete policy for one engine instance."""

    model_config = ConfigDict(extra="ignore")

    routing: RoutingPolicy = Field(default_factory=RoutingPolicy)
    similarity: SimilarityPolicy = Field(default_factory=SimilarityPolicy)
    evolution: EvolutionPolicy = Field(default_factory=EvolutionPolicy)
    anomaly: AnomalyPolicy = Field(default_factory=AnomalyPolicy)

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump()


def _candidate_paths() -> list[Path]:
    paths = []
    if env_path := os.getenv("OPSPILOT_POLICY_PATH"):
        paths.append(Path(env_path))
    paths.extend(
        [
            Path(__file__).parent.parent.parent / "config" / POLICY_FILENAME,
            Path("config") / POLICY_FILENAME,
        ]
    )
    return paths


def _read_policy_file(path: Path | None) -> dict[str, Any]:
    """
    Read the YAML policy file.

    Side Effects:
        - Reads config/opspilot_policy.yaml (or the given path) from filesystem
    """
    candidates = [path] if path is not None else _candidate_paths()
    for candidate in candidates:
        if candidate.exists():
            with open(candidate) as f:
                data = yaml.safe_load(f) or {}
            logger.debug("Loaded automation policy from %s", candidate)
            return data

    if path is not None:
        raise FileNotFoundError(f"Policy file not found: {path}")
    logger.warning("%s not found, using built-in defaults", POLICY_FILENAME)
    return {}


_ROUTING_ENV = {
    "PATTERN_CONFIDENCE_HIGH": ("auto_execute_threshold", float),
    "PATTERN_CONFIDENCE_MEDIUM": ("suggest_threshold", float),
    "PATTERN_CONFIDENCE_LOW": ("approval_threshold", float),
    "PATTERN_TIMEOUT_MS": ("suggestion_timeout_ms", int),
}


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    routing = dict(data.get("routing") or {})
    for env_name, (key, cast) in _ROUTING_ENV.items():
        raw = os.getenv(env_name)
        if raw is not None:
            routing[key] = cast(raw)
    if routing:
        data = {**data, "routing": routing}
    return data


def load_policy(path: Path | str | None = None) -> Policy:
    """
    Build a Policy from YAML plus environment overrides, then validate it.

    Args:
        path: Explicit policy file; when omitted the standard locations are searched

    Raises:
        FileNotFoundError: If an explicit path does not exist
        ValueError: If thresholds are inconsistent (see validate_thresholds)
    """
    data = _read_policy_file(Path(path) if path is not None else None)
    policy = Policy.model_validate(_apply_env_overrides(data))
    validate_thresholds(policy)
    return policy


def validate_thresholds(policy: Policy) -> bool:
    """
    Validate that thresholds are consistent and within valid ranges

    Raises:
        ValueError: If thresholds are inconsistent
    """
    errors = []
    routing = policy.routing
    evolution = policy.evolution

    unit_values = {
        "routing.auto_execute_threshold": routing.auto_execute_threshold,
        "routing.suggest_threshold": routing.suggest_threshold,
        "routing.approval_threshold": routing.approval_threshold,
        "routing.confidence_floor": routing.confidence_floor,
        "evolution.max_confidence": evolution.max_confidence,
        "evolution.min_confidence": evolution.min_confidence,
        "evolution.promotion_confidence": evolution.promotion_confidence,
        "evolution.promotion_success_rate": evolution.promotion_success_rate,
        "evolution.demotion_confidence": evolution.demotion_confidence,
        "evolution.demotion_success_rate": evolution.demotion_success_rate,
        "evolution.decay_floor": evolution.decay_floor,
        "evolution.fork_confidence": evolution.fork_confidence,
        "anomaly.new_pattern_max_confidence": policy.anomaly.new_pattern_max_confidence,
    }
    for name, val in unit_values.items():
        if not (0.0 <= val <= 1.0):
            errors.append(f"{name} ({val}) is outside valid range [0.0, 1.0]")

    if not routing.approval_threshold < routing.suggest_threshold <= routing.auto_execute_threshold:
        errors.append(
            "Routing thresholds must satisfy approval < suggest <= auto_execute "
            f"(got {routing.approval_threshold}, {routing.suggest_threshold}, "
            f"{routing.auto_execute_threshold})"
        )

    if routing.suggestion_timeout_ms <= 0:
        errors.append(
            f"routing.suggestion_timeout_ms must be positive ({routing.suggestion_timeout_ms})"
        )

    if evolution.decay_floor < evolution.min_confidence:
        errors.append(
            f"evolution.decay_floor ({evolution.decay_floor}) must be >= "
            f"evolution.min_confidence ({evolution.min_confidence})"
        )

    if errors:
        raise ValueError("Threshold validation failed:\n" + "\n".join(errors))

    return True
