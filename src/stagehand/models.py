from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from stagehand.errors import StagehandError

InputSource = Literal["user", "previous_stage", "both"]
OutputFormat = Literal[
    "auto",
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
ResultMode = Literal["replace", "append", "passthrough"]
TaskStatus = Literal["pending", "in_progress", "completed", "failed"]
ExecutionStatus = Literal["pending", "running", "awaiting_user", "approved", "failed"]
CompletionStrategy = Literal["pr", "direct_merge", "none"]

ACTIVE_STATUSES = frozenset({"running", "awaiting_user"})
TERMINAL_STATUSES = frozenset({"approved", "failed"})
COMPLETION_STRATEGIES = ("pr", "direct_merge", "none")
PR_STAGE_NAMES = frozenset({"pr preparation", "pr review"})


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_id() -> str:
    return str(uuid4())


# Gate rules


@dataclass(frozen=True, slots=True)
class RequireApproval:
    type: Literal["require_approval"] = "require_approval"


@dataclass(frozen=True, slots=True)
class RequireSelection:
    min: int = 1
    max: int = 1
    type: Literal["require_selection"] = "require_selection"


@dataclass(frozen=True, slots=True)
class RequireAllChecked:
    type: Literal["require_all_checked"] = "require_all_checked"


@dataclass(frozen=True, slots=True)
class RequireFields:
    fields: tuple[str, ...] = ()
    type: Literal["require_fields"] = "require_fields"


GateRule = RequireApproval | RequireSelection | RequireAllChecked | RequireFields


def parse_gate_rule(raw: str | dict[str, Any] | None) -> GateRule:
    """Decode the persisted gate rule JSON into its variant.

    An empty value or an unknown ``type`` falls back to ``require_approval``.
    """
    if raw is None or raw == "":
        return RequireApproval()
    if isinstance(raw, str):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StagehandError(f"Gate rule is not valid JSON: {raw[:200]}") from exc
    else:
        payload = raw
    if not isinstance(payload, dict):
        raise StagehandError(f"Gate rule must be a JSON object, got {type(payload).__name__}.")

    rule_type = payload.get("type")
    if rule_type == "require_selection":
        return RequireSelection(min=int(payload.get("min", 1)), max=int(payload.get("max", 1)))
    if rule_type == "require_all_checked":
        return RequireAllChecked()
    if rule_type == "require_fields":
        names = payload.get("fields") or []
        return RequireFields(fields=tuple(str(name) for name in names))
    return RequireApproval()


def dump_gate_rule(rule: GateRule) -> str:
    if isinstance(rule, RequireSelection):
        return json.dumps({"type": rule.type, "min": rule.min, "max": rule.max})
    if isinstance(rule, RequireFields):
        return json.dumps({"type": rule.type, "fields": list(rule.fields)})
    return json.dumps({"type": rule.type})


def _from_known_fields(cls: type, payload: dict[str, Any]) -> Any:
    names = {item.name for item in fields(cls)}
    return cls(**{key: value for key, value in payload.items() if key in names})


@dataclass(slots=True)
class StageTemplate:
    id: str
    name: str
    sort_order: int
    prompt_template: str
    description: str = ""
    input_source: InputSource = "user"
    output_format: OutputFormat = "auto"
    output_schema: str | None = None
    gate_rules: str = '{"type":"require_approval"}'
    requires_user_input: bool = False
    allowed_tools: str | None = None
    agent: str | None = None
    persona_system_prompt: str | None = None
    result_mode: ResultMode = "replace"

    @property
    def gate_rule(self) -> GateRule:
        return parse_gate_rule(self.gate_rules)

    @property
    def allowed_tool_list(self) -> list[str] | None:
        if not self.allowed_tools:
            return None
        try:
            tools = json.loads(self.allowed_tools)
        except json.JSONDecodeError:
            return None
        if not isinstance(tools, list):
            return None
        return [str(tool) for tool in tools]

    @property
    def is_pr_stage(self) -> bool:
        return self.name.strip().lower() in PR_STAGE_NAMES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StageTemplate:
        template = _from_known_fields(cls, payload)
        template.sort_order = int(template.sort_order)
        template.requires_user_input = bool(template.requires_user_input)
        return template


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    current_stage_id: str | None = None
    status: TaskStatus = "pending"
    selected_stage_ids: list[str] | None = None
    completion_strategy: CompletionStrategy | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return _from_known_fields(cls, payload)


@dataclass(slots=True)
class StageExecution:
    id: str
    task_id: str
    stage_template_id: str
    attempt_number: int
    status: ExecutionStatus = "pending"
    input_prompt: str = ""
    user_input: str | None = None
    raw_output: str | None = None
    parsed_output: str | None = None
    user_decision: str | None = None
    session_id: str | None = None
    owner_pid: int | None = None
    error_message: str | None = None
    thinking_output: str | None = None
    stage_result: str | None = None
    stage_summary: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None
    total_cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None
    started_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def output(self) -> str:
        if self.parsed_output is not None:
            return self.parsed_output
        return self.raw_output or ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StageExecution:
        return _from_known_fields(cls, payload)
