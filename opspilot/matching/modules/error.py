"""Error patterns: exceptions and failures raised by internal systems."""

from __future__ import annotations

import re
from typing import Any

from opspilot.matching.modules.base import PatternModule, first_keyword_category, signature_of
from opspilot.matching.similarity import string_similarity
from opspilot.storage.models import Event, ExecutionOutcome, Pattern

ERROR_CATEGORIES: dict[str, tuple[str, ...]] = {
    "technical": ("timeout", "connection", "database", "api"),
    "business": ("validation", "authorization", "conflict"),
    "user": ("input", "permission", "notfound"),
}

_STACK_FRAME = re.compile(r"at\s+(\S+)\s+\(([^)]+)\)")

MESSAGE_PREFIX = 100


def error_payload(event: Event) -> dict[str, Any]:
    error = event.context.get("error")
    if isinstance(error, dict):
        return error
    if isinstance(error, str):
        return {"message": error}
    return {}


def categorize_error(error: dict[str, Any]) -> str:
    text = str(error.get("message") or error).lower()
    return first_keyword_category(text, ERROR_CATEGORIES, "general")


def stack_pattern(stack: str | None) -> str | None:
    """Condense the top five frames to 'function:file -> ...'."""
    if not stack:
        return None
    frames = []
    for line in stack.splitlines()[:5]:
        if match := _STACK_FRAME.search(line):
            frames.append(f"{match.group(1)}:{match.group(2).split('/')[-1]}")
    return " -> ".join(frames) or None


class ErrorPatternModule(PatternModule):
    name = "error"
    min_confidence = 0.6
    handles = frozenset({"error", "exception", "failure"})

    def generate_signature(self, event: Event) -> str:
        error = error_payload(event)
        return signature_of(
            "error",
            error.get("type") or error.get("name") or "unknown",
            error.get("code"),
            categorize_error(error),
            event.context.get("module"),
            event.context.get("action"),
        )

    def semantic_score(self, pattern: Pattern, event: Event) -> float:
        error = error_payload(event)
        expected = pattern.logic.attributes.get("error") or {}
        if not error or not isinstance(expected, dict):
            return 0.0

        score = 0.0
        if error.get("type") is not None and error.get("type") == expected.get("type"):
            score += 0.4
        if error.get("code") and error.get("code") == expected.get("code"):
            score += 0.3
        if error.get("message") and expected.get("message"):
            score += (
                string_similarity(
                    str(error["message"])[:MESSAGE_PREFIX],
                    str(expected["message"])[:MESSAGE_PREFIX],
                )
                * 0.3
            )
        return score

    def key_attributes(self, event: Event) -> dict[str, Any]:
        error = error_payload(event)
        return {
            "error_type": error.get("type") or error.get("name"),
            "error_code": error.get("code"),
            "module": event.context.get("module"),
            "endpoint": event.context.get("endpoint"),
            "stack": stack_pattern(error.get("stack")),
        }

    def extract_conditions(self, event: Event, outcome: ExecutionOutcome) -> dict[str, Any]:
        return {
            "error_frequency": event.context.get("error_frequency", "single"),
            "user_impact": event.context.get("user_impact", "unknown"),
            "system_load": event.context.get("system_load", "normal"),
            "time_of_day": event.timestamp.hour,
            "recovery_action": outcome.pattern.logic.type,
        }
