from __future__ import annotations

import json
from typing import Any, Literal, get_args

DetectedType = Literal[
    "text",
    "options",
    "checklist",
    "structured",
    "research",
    "findings",
    "plan",
    "pr_preparation",
    "pr_review",
    "merge",
    "task_splitting",
    "interactive_terminal",
]

DETECTED_TYPES: frozenset[str] = frozenset(get_args(DetectedType))

# Stages driven by an integration, never reinterpreted from content.
INTEGRATION_FORMATS = frozenset({"merge", "pr_review", "pr_preparation", "interactive_terminal"})

# Detected types whose output view renders its own approve/submit control.
OWN_ACTION_TYPES = frozenset(
    {
        "options",
        "checklist",
        "structured",
        "research",
        "findings",
        "pr_preparation",
        "pr_review",
        "merge",
        "task_splitting",
        "interactive_terminal",
    }
)


def _parse_object(output: str) -> dict[str, Any] | None:
    try:
        data = json.loads(output)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _classify(data: dict[str, Any]) -> DetectedType:
    # Rarer, more specific shapes are tested before the generic ones.
    if isinstance(data.get("proposed_tasks"), list):
        return "task_splitting"
    if isinstance(data.get("findings"), list):
        return "findings"
    if isinstance(data.get("research"), str):
        return "research"
    if isinstance(data.get("plan"), str):
        return "plan"
    if isinstance(data.get("options"), list):
        return "options"
    questions = data.get("questions")
    if isinstance(questions, list) and questions:
        return "research"
    if isinstance(data.get("fields"), dict):
        return "structured"
    if isinstance(data.get("items"), list):
        return "checklist"
    return "text"


def detect_interaction_type(output: str | None, format_hint: str | None = None) -> DetectedType:
    """Resolve the interaction shape of a stage's output.

    Integration formats are returned unconditionally, any other explicit hint
    is authoritative, and ``auto`` (or no hint) classifies the JSON payload by
    shape, falling back to ``text``.
    """
    if format_hint in INTEGRATION_FORMATS:
        return format_hint  # type: ignore[return-value]
    if format_hint and format_hint != "auto":
        if format_hint in DETECTED_TYPES:
            return format_hint  # type: ignore[return-value]
        return "text"

    data = _parse_object(output or "")
    if data is None:
        return "text"
    return _classify(data)


def is_findings_payload(output: str | None) -> bool:
    data = _parse_object(output or "")
    return data is not None and isinstance(data.get("findings"), list)


def has_own_output_action(output: str | None, format_hint: str | None = None) -> bool:
    """Whether the detected view supplies its own completion control.

    A findings stage owns its action only while the payload still carries the
    findings array. The same stage later returns a free-text summary of the
    applied fixes, which needs an external approve control like ``text``.
    """
    detected = detect_interaction_type(output, format_hint)
    if detected == "findings":
        return is_findings_payload(output)
    return detected in OWN_ACTION_TYPES
