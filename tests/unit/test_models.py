"""Tests for pattern logic parsing, event coercion and row round-trips"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from opspilot.storage.models import (
    ActionListLogic,
    ApiCallLogic,
    ExecutionRecord,
    ExecutionStatus,
    FailureSeverity,
    PassthroughLogic,
    Pattern,
    PatternValidationError,
    SequenceLogic,
    coerce_event,
    merge_logic_changes,
    parse_logic,
    parse_timestamp,
)


class TestParseLogic:
    def test_camel_case_tag_and_keys(self):
        logic = parse_logic(
            {"type": "apiCall", "method": "post", "url": "https://crm.example", "includeEvent": True}
        )
        assert isinstance(logic, ApiCallLogic)
        assert logic.method == "POST"
        assert logic.include_event

    def test_actions_list_without_tag(self):
        logic = parse_logic({"actions": ["lock_bay", {"name": "notify", "target": "ops"}]})
        assert isinstance(logic, ActionListLogic)
        assert [a.name for a in logic.actions] == ["lock_bay", "notify"]
        assert logic.stop_on_failure

    def test_unknown_tag_becomes_passthrough(self):
        raw = {"type": "email_template", "subject": "Bay closed", "conditions": [{"field": "kind"}]}
        logic = parse_logic(raw)
        assert isinstance(logic, PassthroughLogic)
        assert logic.payload == raw
        assert logic.conditions[0].field == "kind"

    def test_sequence_steps_are_normalized(self):
        logic = parse_logic(
            {"type": "sequence", "steps": [{"type": "actionList", "actions": ["a"]}, {"type": "action", "action": "b"}]}
        )
        assert isinstance(logic, SequenceLogic)
        assert logic.steps[1].action.name == "b"

    def test_json_string(self):
        assert parse_logic('{"type": "function", "handler": "assign"}').handler == "assign"

    @pytest.mark.parametrize(
        "raw",
        [
            "{not json",
            ["a", "list"],
            {"type": "function"},
            {"type": "action", "action": {"name": "x", "colour": "red"}},
            {"type": "action_list", "actions": []},
        ],
    )
    def test_invalid_payloads(self, raw):
        with pytest.raises(PatternValidationError):
            parse_logic(raw)


def test_merge_logic_changes_leaves_original_alone():
    original = parse_logic({"type": "function", "handler": "assign", "parameters": {"coach": "kim"}})

    merged = merge_logic_changes(original, {"parameters": {"coach": "lee", "court": 3}})

    assert merged.parameters == {"coach": "lee", "court": 3}
    assert original.parameters == {"coach": "kim"}


class TestCoerceEvent:
    def test_context_keys_snake_cased_and_extras_folded_in(self):
        event = coerce_event(
            {"type": "booking", "context": {"customerId": "c-1"}, "resourceId": "court-2"}
        )
        assert event.kind == "booking"
        assert event.context == {"customer_id": "c-1", "resource_id": "court-2"}
        assert event.quality_issues == []

    def test_epoch_millis_timestamp(self):
        event = coerce_event({"kind": "access", "timestamp": 1704103200000})
        assert event.timestamp == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)

    def test_bad_context_recorded(self):
        event = coerce_event({"kind": "access", "context": "door 4"})
        assert event.context == {}
        assert event.quality_issues == ["invalid_data_types"]

    def test_missing_timestamp_defaults_to_now(self):
        before = datetime.now(UTC)
        assert coerce_event({"kind": "access"}).timestamp >= before

    def test_get_path(self):
        event = coerce_event({"kind": "access", "context": {"door": {"name": "North"}}})
        assert event.get_path("context.door.name") == "North"
        assert event.get_path("kind") == "access"
        assert event.get_path("context.window") is None


@pytest.mark.parametrize(
    "value,expected",
    [
        ("2024-01-01T10:00:00Z", datetime(2024, 1, 1, 10, 0, tzinfo=UTC)),
        ("2024-01-01T10:00:00", datetime(2024, 1, 1, 10, 0, tzinfo=UTC)),
        (1704103200, datetime(2024, 1, 1, 10, 0, tzinfo=UTC)),
        ("soon", None),
        (True, None),
        ("", None),
    ],
)
def test_parse_timestamp(value, expected):
    assert parse_timestamp(value) == expected


class TestPatternRows:
    def test_round_trip_through_store(self, store):
        pattern = Pattern(
            decision_type="Booking",
            trigger_signature=" booking:court ",
            logic={"type": "action", "action": "confirm_booking"},
            confidence_score=1.4,
            source_module="booking",
        )
        store.save_pattern(pattern)

        loaded = store.get_pattern(pattern.id)

        assert loaded.decision_type == "booking"
        assert loaded.trigger_signature == "booking:court"
        assert loaded.confidence_score == 1.0
        assert loaded.logic.action.name == "confirm_booking"
        assert loaded.source_module == "booking"

    def test_with_logic_changes_is_a_copy(self):
        pattern = Pattern(
            decision_type="booking",
            trigger_signature="booking",
            logic={"type": "action", "action": {"name": "confirm", "target": "court-1"}},
        )

        changed = pattern.with_logic_changes({"action": {"target": "court-2"}})

        assert changed.id == pattern.id
        assert changed.logic.action.target == "court-2"
        assert pattern.logic.action.target == "court-1"

    def test_success_rate(self):
        pattern = Pattern(
            decision_type="x",
            trigger_signature="x",
            logic={},
            execution_count=4,
            success_count=3,
        )
        assert pattern.success_rate == 0.75
        assert Pattern(decision_type="x", trigger_signature="x", logic={}).success_rate == 0.0


def test_execution_record_round_trip(store, make_pattern):
    pattern = make_pattern()
    store.append_execution(
        ExecutionRecord(
            pattern_id=pattern.id,
            reference_id="ref-1",
            status=ExecutionStatus.FAILURE,
            error="timed out",
            failure_severity=FailureSeverity.MAJOR,
            result={"partial": True},
        )
    )

    record = store.executions_for_reference("ref-1")[0]

    assert record.id is not None
    assert record.status == "failure"
    assert record.failure_severity == "major"
    assert record.result == {"partial": True}
