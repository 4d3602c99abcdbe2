from __future__ import annotations

import json
from typing import Any

from stagehand.models import (
    GateRule,
    RequireAllChecked,
    RequireApproval,
    RequireFields,
    RequireSelection,
    StageExecution,
    StageTemplate,
)

_UNPARSABLE = object()


def _loads(decision: str) -> Any:
    try:
        return json.loads(decision)
    except ValueError:
        return _UNPARSABLE


def validate_gate(
    rule: GateRule,
    decision: str | None,
    execution: StageExecution | None = None,
) -> bool:
    """Decide whether ``decision`` satisfies ``rule``.

    ``require_selection`` accepts a decision that is not JSON at all as one
    implicit selection. Legacy stages stored a bare value instead of an array,
    and those decisions must keep passing. A decision that parses to some
    other JSON value is still rejected.
    """
    _ = execution
    if isinstance(rule, RequireApproval):
        return True

    if not decision:
        return False
    parsed = _loads(decision)

    if isinstance(rule, RequireSelection):
        if parsed is _UNPARSABLE:
            return True
        if not isinstance(parsed, list):
            return False
        return rule.min <= len(parsed) <= rule.max

    if isinstance(rule, RequireAllChecked):
        if not isinstance(parsed, list):
            return False
        return all(isinstance(item, dict) and item.get("checked") is True for item in parsed)

    if isinstance(rule, RequireFields):
        if not isinstance(parsed, dict):
            return False
        for name in rule.fields:
            value = parsed.get(name)
            if value is None or not str(value).strip():
                return False
        return True

    return True


def describe_gate(rule: GateRule) -> str:
    if isinstance(rule, RequireSelection):
        if rule.min == rule.max:
            return f"select exactly {rule.min} option(s)"
        return f"select between {rule.min} and {rule.max} option(s)"
    if isinstance(rule, RequireAllChecked):
        return "check every checklist item"
    if isinstance(rule, RequireFields):
        return "fill in " + ", ".join(rule.fields)
    return "approve"


def should_auto_start_stage(template: StageTemplate) -> bool:
    """Whether ``template`` starts on its own once the previous stage is approved."""
    if template.output_format in {"merge", "interactive_terminal"}:
        return False
    return not template.requires_user_input
