"""Tests for precondition evaluation"""

from __future__ import annotations

import pytest

from opspilot.automation.conditions import check_preconditions, evaluate, resolve
from opspilot.storage.models import Condition, Event


@pytest.fixture
def event():
    return Event(
        kind="booking",
        category="court",
        context={"membership_days": 45, "tags": ["vip"], "location": "North Door", "note": ""},
    )


def test_resolve_paths(event):
    assert resolve(event, "kind") == "booking"
    assert resolve(event, "context.membership_days") == 45
    assert resolve(event, "membership_days") == 45
    assert resolve(event, "context.missing") is None


@pytest.mark.parametrize(
    "field,operator,value,expected",
    [
        ("kind", "eq", "booking", True),
        ("kind", "ne", "booking", False),
        ("category", "in", ["court", "bay"], True),
        ("category", "not_in", ["court"], False),
        ("membership_days", "gte", 30, True),
        ("membership_days", "gt", 45, False),
        ("membership_days", "lt", "50", True),
        ("membership_days", "lte", 44, False),
        ("tags", "contains", "vip", True),
        ("location", "contains", "North", True),
        ("location", "exists", None, True),
        ("missing_field", "missing", None, True),
        ("missing_field", "gt", 1, False),
        ("location", "gt", 1, False),
    ],
)
def test_operators(event, field, operator, value, expected):
    assert evaluate(Condition(field=field, operator=operator, value=value), event) is expected


def test_first_failing_condition_message(event):
    conditions = [
        Condition(field="kind", value="booking"),
        Condition(field="membership_days", operator="gte", value=90, failure_message="too new"),
        Condition(field="category", value="bay"),
    ]
    assert check_preconditions(conditions, event) == "too new"


def test_default_failure_message(event):
    message = check_preconditions([Condition(field="category", value="bay")], event)
    assert message == "Condition failed: category eq 'bay'"


def test_all_conditions_hold(event):
    assert check_preconditions([Condition(field="kind", value="booking")], event) is None
    assert check_preconditions([], event) is None


def test_camel_case_condition_keys_accepted():
    condition = Condition.model_validate(
        {"field": "kind", "operator": "eq", "value": "x", "failureMessage": "nope"}
    )
    assert condition.failure_message == "nope"
