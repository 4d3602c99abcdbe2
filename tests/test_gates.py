import json

import pytest

from stagehand.errors import StagehandError
from stagehand.gates import describe_gate, should_auto_start_stage, validate_gate
from stagehand.models import (
    RequireAllChecked,
    RequireApproval,
    RequireFields,
    RequireSelection,
    StageTemplate,
    dump_gate_rule,
    parse_gate_rule,
)


def test_require_approval_always_passes() -> None:
    assert validate_gate(RequireApproval(), None) is True
    assert validate_gate(RequireApproval(), "") is True
    assert validate_gate(RequireApproval(), "anything") is True


def test_require_selection_bounds() -> None:
    rule = RequireSelection(min=1, max=2)

    assert validate_gate(rule, "[]") is False
    assert validate_gate(rule, '["a"]') is True
    assert validate_gate(rule, '["a", "b"]') is True
    assert validate_gate(rule, '["a", "b", "c"]') is False
    assert validate_gate(rule, None) is False


def test_require_selection_accepts_legacy_single_value() -> None:
    rule = RequireSelection(min=1, max=1)

    assert validate_gate(rule, "approach-1") is True
    assert validate_gate(rule, '{"id": "approach-1"}') is False


def test_require_all_checked() -> None:
    rule = RequireAllChecked()

    assert validate_gate(rule, json.dumps([{"checked": True}, {"checked": True}])) is True
    assert validate_gate(rule, json.dumps([{"checked": True}, {"checked": False}])) is False
    assert validate_gate(rule, json.dumps([{"id": "x"}])) is False
    assert validate_gate(rule, "not json") is False
    assert validate_gate(rule, None) is False


def test_require_fields() -> None:
    rule = RequireFields(fields=("title", "description"))

    assert validate_gate(rule, '{"title":"T"}') is False
    assert validate_gate(rule, '{"title":"T","description":"D"}') is True
    assert validate_gate(rule, '{"title":"T","description":"   "}') is False
    assert validate_gate(rule, '{"title":"T","description":0}') is True
    assert validate_gate(rule, "[]") is False
    assert validate_gate(rule, "oops") is False


def test_parse_gate_rule_variants() -> None:
    assert parse_gate_rule(None) == RequireApproval()
    assert parse_gate_rule('{"type":"require_selection","min":1,"max":3}') == RequireSelection(
        min=1, max=3
    )
    assert parse_gate_rule({"type": "require_fields", "fields": ["a"]}) == RequireFields(
        fields=("a",)
    )
    assert parse_gate_rule('{"type":"something_new"}') == RequireApproval()
    with pytest.raises(StagehandError):
        parse_gate_rule("{not json")
    with pytest.raises(StagehandError):
        parse_gate_rule("[]")


def test_dump_gate_rule_matches_persisted_shape() -> None:
    assert json.loads(dump_gate_rule(RequireSelection(min=1, max=1))) == {
        "type": "require_selection",
        "min": 1,
        "max": 1,
    }
    assert json.loads(dump_gate_rule(RequireAllChecked())) == {"type": "require_all_checked"}


def test_describe_gate() -> None:
    assert describe_gate(RequireSelection(min=1, max=1)) == "select exactly 1 option(s)"
    assert describe_gate(RequireFields(fields=("title",))) == "fill in title"
    assert describe_gate(RequireApproval()) == "approve"


@pytest.mark.parametrize(
    ("output_format", "requires_user_input", "expected"),
    [
        ("options", False, True),
        ("text", False, True),
        ("merge", False, False),
        ("interactive_terminal", False, False),
        ("pr_review", True, False),
    ],
)
def test_should_auto_start_stage(
    output_format: str, requires_user_input: bool, expected: bool
) -> None:
    template = StageTemplate(
        id="s",
        name="Stage",
        sort_order=1,
        prompt_template="",
        output_format=output_format,  # type: ignore[arg-type]
        requires_user_input=requires_user_input,
    )

    assert should_auto_start_stage(template) is expected
