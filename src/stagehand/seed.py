from __future__ import annotations

import json
from dataclasses import dataclass
from importlib import resources
from typing import Any

from stagehand.models import StageTemplate, new_id

READ_ONLY_TOOLS = ["Read", "Glob", "Grep"]

_FINDING_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "summary": {"type": "string"},
        "findings": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "severity": {"type": "string", "enum": ["critical", "warning", "info"]},
                    "category": {"type": "string"},
                    "file_path": {"type": "string"},
                    "selected": {"type": "boolean"},
                },
                "required": ["id", "title", "description", "severity", "selected"],
            },
        },
    },
    "required": ["summary", "findings"],
}


@dataclass(slots=True)
class _StageSpec:
    name: str
    description: str
    prompt_file: str
    output_format: str
    input_source: str = "previous_stage"
    output_schema: dict[str, Any] | None = None
    gate_rules: dict[str, Any] | None = None
    allowed_tools: list[str] | None = None
    requires_user_input: bool = False
    result_mode: str = "replace"


DEFAULT_STAGES: tuple[_StageSpec, ...] = (
    _StageSpec(
        name="Research",
        description="Investigate the problem space, gather context and list open questions.",
        prompt_file="research.md",
        output_format="research",
        input_source="user",
        output_schema={
            "type": "object",
            "properties": {
                "research": {"type": "string"},
                "questions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "id": {"type": "string"},
                            "question": {"type": "string"},
                            "proposed_answer": {"type": "string"},
                            "options": {"type": "array", "items": {"type": "string"}},
                        },
                        "required": ["id", "question", "proposed_answer"],
                    },
                },
                "suggested_stages": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "reason": {"type": "string"},
                        },
                        "required": ["name"],
                    },
                },
            },
            "required": ["research", "questions"],
        },
        allowed_tools=[*READ_ONLY_TOOLS, "WebSearch", "WebFetch"],
    ),
    _StageSpec(
        name="High-Level Approaches",
        description="Propose alternative implementation approaches to choose from.",
        prompt_file="approaches.md",
        output_format="options",
        output_schema={
            "type": "object",
            "properties": {
                "options": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "id": {"type": "string"},
                            "title": {"type": "string"},
                            "description": {"type": "string"},
                            "pros": {"type": "array", "items": {"type": "string"}},
                            "cons": {"type": "array", "items": {"type": "string"}},
                        },
                        "required": ["id", "title", "description", "pros", "cons"],
                    },
                },
            },
            "required": ["options"],
        },
        gate_rules={"type": "require_selection", "min": 1, "max": 1},
        allowed_tools=READ_ONLY_TOOLS,
        result_mode="append",
    ),
    _StageSpec(
        name="Planning",
        description="Write a step-by-step implementation plan for the selected approach.",
        prompt_file="planning.md",
        output_format="plan",
        output_schema={
            "type": "object",
            "properties": {"plan": {"type": "string"}},
            "required": ["plan"],
        },
        allowed_tools=READ_ONLY_TOOLS,
    ),
    _StageSpec(
        name="Implementation",
        description="Carry out the plan: write code, create files and run commands.",
        prompt_file="implementation.md",
        output_format="text",
    ),
    _StageSpec(
        name="Refinement",
        description="Self-review the implementation, then apply the findings the developer picks.",
        prompt_file="refinement.md",
        output_format="findings",
        output_schema=_FINDING_SCHEMA,
        result_mode="append",
    ),
    _StageSpec(
        name="Security Review",
        description="Look for security problems, then apply the selected fixes.",
        prompt_file="security_review.md",
        output_format="findings",
        output_schema=_FINDING_SCHEMA,
        result_mode="append",
    ),
    _StageSpec(
        name="PR Preparation",
        description="Draft the pull request title, description and test plan.",
        prompt_file="pr_preparation.md",
        output_format="pr_preparation",
        output_schema={
            "type": "object",
            "properties": {
                "fields": {
                    "type": "object",
                    "properties": {
                        "title": {"type": "string"},
                        "description": {"type": "string"},
                        "test_plan": {"type": "string"},
                    },
                    "required": ["title", "description", "test_plan"],
                },
            },
            "required": ["fields"],
        },
        gate_rules={"type": "require_fields", "fields": ["title", "description"]},
        allowed_tools=READ_ONLY_TOOLS,
    ),
    _StageSpec(
        name="PR Review",
        description="Work through reviewer comments on the open pull request.",
        prompt_file="pr_review.md",
        output_format="pr_review",
        requires_user_input=True,
    ),
    _StageSpec(
        name="Merge",
        description="Merge the task branch into the target branch.",
        prompt_file="merge.md",
        output_format="merge",
    ),
)


def load_prompt(prompt_file: str) -> str:
    return resources.files("stagehand.prompts").joinpath(prompt_file).read_text(encoding="utf-8")


def default_stage_templates() -> list[StageTemplate]:
    templates: list[StageTemplate] = []
    for sort_order, spec in enumerate(DEFAULT_STAGES):
        templates.append(
            StageTemplate(
                id=new_id(),
                name=spec.name,
                sort_order=sort_order,
                prompt_template=load_prompt(spec.prompt_file).strip(),
                description=spec.description,
                input_source=spec.input_source,  # type: ignore[arg-type]
                output_format=spec.output_format,  # type: ignore[arg-type]
                output_schema=json.dumps(spec.output_schema) if spec.output_schema else None,
                gate_rules=json.dumps(spec.gate_rules or {"type": "require_approval"}),
                requires_user_input=spec.requires_user_input,
                allowed_tools=json.dumps(spec.allowed_tools) if spec.allowed_tools else None,
                result_mode=spec.result_mode,  # type: ignore[arg-type]
            )
        )
    return templates
