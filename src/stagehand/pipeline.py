from __future__ import annotations

from collections.abc import Iterable

from stagehand.models import StageExecution, StageTemplate, Task


def ordered_templates(templates: Iterable[StageTemplate]) -> list[StageTemplate]:
    return sorted(templates, key=lambda template: (template.sort_order, template.name))


def participating_templates(task: Task, templates: Iterable[StageTemplate]) -> list[StageTemplate]:
    """Stages that take part in this task's run, in pipeline order.

    The first stage is always included. A recorded stage selection narrows the
    rest, and a completion strategy other than ``pr`` drops the PR stages
    (``none`` also drops the merge stage).
    """
    ordered = ordered_templates(templates)
    if not ordered:
        return []
    first, rest = ordered[0], ordered[1:]
    if task.selected_stage_ids is not None:
        selected = set(task.selected_stage_ids)
        rest = [template for template in rest if template.id in selected]
    strategy = task.completion_strategy
    if strategy is not None and strategy != "pr":
        rest = [template for template in rest if not template.is_pr_stage]
    if strategy == "none":
        rest = [template for template in rest if template.output_format != "merge"]
    return [first, *rest]


def previous_template(
    task: Task, templates: Iterable[StageTemplate], current: StageTemplate
) -> StageTemplate | None:
    earlier = [
        template
        for template in participating_templates(task, templates)
        if template.sort_order < current.sort_order
    ]
    return earlier[-1] if earlier else None


def next_template(
    task: Task, templates: Iterable[StageTemplate], current: StageTemplate
) -> StageTemplate | None:
    for template in participating_templates(task, templates):
        if template.sort_order > current.sort_order:
            return template
    return None


def attempts_for(
    executions: Iterable[StageExecution], task_id: str, stage_template_id: str
) -> list[StageExecution]:
    matching = [
        execution
        for execution in executions
        if execution.task_id == task_id and execution.stage_template_id == stage_template_id
    ]
    return sorted(matching, key=lambda execution: execution.attempt_number)


def latest_attempt(
    executions: Iterable[StageExecution], task_id: str, stage_template_id: str
) -> StageExecution | None:
    attempts = attempts_for(executions, task_id, stage_template_id)
    return attempts[-1] if attempts else None


def latest_approved(
    executions: Iterable[StageExecution], task_id: str, stage_template_id: str
) -> StageExecution | None:
    approved = [
        execution
        for execution in attempts_for(executions, task_id, stage_template_id)
        if execution.status == "approved"
    ]
    return approved[-1] if approved else None


def active_attempt(
    executions: Iterable[StageExecution], task_id: str, stage_template_id: str
) -> StageExecution | None:
    for execution in attempts_for(executions, task_id, stage_template_id):
        if execution.is_active:
            return execution
    return None
