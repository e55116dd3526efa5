"""Precondition evaluation for pattern logic."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from opspilot.storage.models import Condition, Event

_EVENT_ROOTS = {"kind", "category", "action", "context", "timestamp", "urgent"}


def resolve(event: Event, path: str) -> Any:
    """Bare names are looked up in the event context."""
    root = path.split(".", 1)[0]
    if root in _EVENT_ROOTS:
        return event.get_path(path)
    return event.get_path(f"context.{path}")


def _compare(actual: Any, operator: str, expected: Any) -> bool:
    if operator == "exists":
        return actual is not None
    if operator == "missing":
        return actual is None
    if operator == "eq":
        return actual == expected
    if operator == "ne":
        return actual != expected
    if operator == "in":
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if operator == "not_in":
        return not isinstance(expected, (list, tuple, set)) or actual not in expected
    if operator == "contains":
        if isinstance(actual, str):
            return str(expected) in actual
        return isinstance(actual, (list, tuple, set, dict)) and expected in actual

    if actual is None or expected is None:
        return False
    try:
        left, right = float(actual), float(expected)
    except (TypeError, ValueError):
        return False
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    if operator == "lte":
        return left <= right
    raise ValueError(f"Unknown condition operator: {operator}")


def evaluate(condition: Condition, event: Event) -> bool:
    return _compare(resolve(event, condition.field), condition.operator, condition.value)


def check_preconditions(conditions: Sequence[Condition], event: Event) -> str | None:
    """
    Evaluate every condition in order.

    Returns:
        Failure message for the first condition that does not hold, or None
    """
    for condition in conditions:
        if not evaluate(condition, event):
            return condition.failure_message or (
                f"Condition failed: {condition.field} {condition.operator} {condition.value!r}"
            )
    return None
