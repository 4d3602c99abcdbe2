"""Prompt template rendering.

Templates use ``{{variable}}`` placeholders, ``{{stages.<Name>.output}}`` /
``{{stages.<Name>.summary}}`` lookups and ``{{#if var}}A{{else}}B{{/if}}``
conditionals. Rendering never raises. An unknown stage lookup resolves to an
empty string and other unrecognized ``{{...}}`` text is left untouched. A
``{{#if}}`` without a closing ``{{/if}}`` stays in the output as literal text.
Conditionals are resolved before placeholders, and substitution is a single
pass: inserted values are never re-interpreted.
Conditional blocks do not nest; the first ``{{/if}}`` closes the open block.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from stagehand.models import StageExecution, StageTemplate, Task
from stagehand.pipeline import (
    attempts_for,
    latest_approved,
    ordered_templates,
    participating_templates,
    previous_template,
)

NO_PREVIOUS_OUTPUT = "(no previous output)"

IF_BLOCK_PATTERN = re.compile(r"\{\{#if\s+([^}]+?)\s*\}\}([\s\S]*?)\{\{/if\}\}")
ELSE_PATTERN = re.compile(r"\{\{else\}\}")
STAGE_PATH_PATTERN = re.compile(r"^stages\.([^.}]+)\.(output|summary)$")
PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}#/]+?)\}\}")
SIMPLE_VARIABLES = (
    "task_description",
    "previous_output",
    "user_input",
    "user_decision",
    "prior_attempt_output",
    "stage_summaries",
    "all_stage_outputs",
    "available_stages",
)


@dataclass(slots=True)
class StageOutput:
    output: str = ""
    summary: str = ""


@dataclass(slots=True)
class PromptContext:
    task_description: str
    previous_output: str | None = None
    user_input: str | None = None
    user_decision: str | None = None
    prior_attempt_output: str | None = None
    stage_summaries: str | None = None
    stage_outputs: dict[str, StageOutput] = field(default_factory=dict)
    all_stage_outputs: str | None = None
    available_stages: str | None = None

    def lookup(self, name: str) -> str | None:
        stage_match = STAGE_PATH_PATTERN.match(name)
        if stage_match:
            data = self.stage_outputs.get(stage_match.group(1))
            if data is None:
                return None
            return data.output if stage_match.group(2) == "output" else data.summary
        if name in SIMPLE_VARIABLES:
            return getattr(self, name)
        return None


def _resolve_conditionals(template: str, context: PromptContext) -> str:
    def _replace(match: re.Match[str]) -> str:
        value = context.lookup(match.group(1).strip())
        branches = ELSE_PATTERN.split(match.group(2), maxsplit=1)
        if value:
            return branches[0]
        return branches[1] if len(branches) > 1 else ""

    return IF_BLOCK_PATTERN.sub(_replace, template)


def _substitute(template: str, context: PromptContext) -> str:
    def _value(match: re.Match[str]) -> str:
        name = match.group(1)
        if STAGE_PATH_PATTERN.match(name):
            return context.lookup(name) or ""
        if name not in SIMPLE_VARIABLES:
            return match.group(0)
        value = context.lookup(name)
        if value is None:
            return NO_PREVIOUS_OUTPUT if name == "previous_output" else ""
        return value

    return PLACEHOLDER_PATTERN.sub(_value, template)


def render_prompt(template: str, context: PromptContext) -> str:
    resolved = _resolve_conditionals(template, context)
    return _substitute(resolved, context).strip()


def _execution_result(execution: StageExecution) -> str | None:
    if execution.stage_result is not None:
        return execution.stage_result
    if execution.parsed_output is not None:
        return execution.parsed_output
    return execution.raw_output


def _effective_user_input(
    prior_attempts: list[StageExecution], user_input: str | None
) -> str | None:
    if not prior_attempts or not user_input:
        return user_input
    first_input = prior_attempts[0].user_input
    if not first_input or first_input == user_input:
        return user_input
    return f"{first_input}\n\n---\n\nAnswers to follow-up questions:\n{user_input}"


def build_prompt_context(
    task: Task,
    template: StageTemplate,
    templates: Iterable[StageTemplate],
    executions: Iterable[StageExecution],
    *,
    user_input: str | None = None,
) -> PromptContext:
    """Assemble the rendering context for ``template`` from the task's history."""
    templates = list(templates)
    executions = list(executions)

    description = task.title
    if task.description and task.description.strip() != task.title.strip():
        description = f"{task.title}\n\n{task.description}"

    previous_output: str | None = None
    user_decision: str | None = None
    previous = previous_template(task, templates, template)
    if previous is not None:
        previous_exec = latest_approved(executions, task.id, previous.id)
        if previous_exec is not None:
            previous_output = _execution_result(previous_exec)
            user_decision = previous_exec.user_decision

    prior_attempts = attempts_for(executions, task.id, template.id)
    prior_attempt_output: str | None = None
    if prior_attempts:
        latest = prior_attempts[-1]
        if latest.parsed_output is not None:
            prior_attempt_output = latest.parsed_output
        else:
            prior_attempt_output = latest.raw_output

    stage_outputs: dict[str, StageOutput] = {}
    result_blocks: list[str] = []
    summary_lines: list[str] = []
    for earlier in participating_templates(task, templates):
        if earlier.sort_order >= template.sort_order:
            break
        approved = latest_approved(executions, task.id, earlier.id)
        if approved is None:
            continue
        result = _execution_result(approved) or ""
        summary = approved.stage_summary or ""
        stage_outputs[earlier.name] = StageOutput(output=result, summary=summary)
        if result:
            result_blocks.append(f"## {earlier.name}\n\n{result}")
        if summary:
            summary_lines.append(f"- {earlier.name}: {summary}")

    ordered = ordered_templates(templates)
    available_lines = [
        f'- "{candidate.name}": {candidate.description}'.rstrip()
        for candidate in ordered[1:]
    ]

    return PromptContext(
        task_description=description,
        previous_output=previous_output,
        user_input=_effective_user_input(prior_attempts, user_input),
        user_decision=user_decision,
        prior_attempt_output=prior_attempt_output,
        stage_summaries="\n".join(summary_lines) or None,
        stage_outputs=stage_outputs,
        all_stage_outputs="\n\n---\n\n".join(result_blocks) or None,
        available_stages="\n".join(available_lines) or None,
    )
