from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from stagehand.config import StagehandConfig, load_config, save_config
from stagehand.errors import StagehandError
from stagehand.gates import describe_gate
from stagehand.health import ProcessHealthMonitor
from stagehand.machine import StageExecutionStateMachine
from stagehand.models import COMPLETION_STRATEGIES, StageExecution, StageTemplate, Task, new_id
from stagehand.pipeline import latest_attempt, participating_templates
from stagehand.runners import AgentRunnerError, ClaudeCommand, CodexCommand, SubprocessAgentRunner
from stagehand.seed import default_stage_templates
from stagehand.state import JsonStateStore

T = TypeVar("T")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: StagehandConfig
    store: JsonStateStore
    machine: StageExecutionStateMachine


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _build_runner(config: StagehandConfig) -> SubprocessAgentRunner:
    return SubprocessAgentRunner(
        {
            "claude": ClaudeCommand(config.agent.claude_binary),
            "codex": CodexCommand(config.agent.codex_binary),
        },
        default_agent=config.agent.primary,
    )


def _echo_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "stage_started":
        click.echo(f"Started attempt {event.get('attempt_number')} ({event.get('execution_id')})")
    elif name == "stage_failed":
        click.echo(f"Stage failed: {event.get('message')}", err=True)
    elif name in {"stage_awaiting_user", "stage_ready"}:
        click.echo("Stage finished, waiting for approval.")
    elif name == "task_completed":
        click.echo("Task completed.")


def _load_runtime(ctx: click.Context) -> Runtime:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, ctx.obj["config_value"])
    config = load_config(config_path)
    store = JsonStateStore(config.state_directory(project_root))
    working_directory = Path(config.project.working_directory)
    if not working_directory.is_absolute():
        working_directory = project_root / working_directory
    machine = StageExecutionStateMachine(
        store,
        _build_runner(config),
        config,
        working_directory=working_directory.resolve(),
        event_hook=_echo_event,
    )
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        store=store,
        machine=machine,
    )


def _run_monitored(runtime: Runtime, operation: Callable[[], Awaitable[T]]) -> T:
    async def _main() -> T:
        monitor = ProcessHealthMonitor(
            runtime.machine,
            interval_seconds=runtime.config.health.poll_interval_seconds,
            inactivity_timeout_seconds=runtime.config.health.inactivity_timeout_seconds,
        )
        monitor.attach()
        try:
            await monitor.watch_running()
            return await operation()
        finally:
            await monitor.stop_all()

    try:
        return asyncio.run(_main())
    except (StagehandError, AgentRunnerError) as exc:
        raise click.ClickException(str(exc)) from exc


def _find_template(templates: list[StageTemplate], name: str) -> StageTemplate:
    wanted = name.strip().lower()
    for template in templates:
        if template.name.lower() == wanted or template.id == name:
            return template
    raise click.ClickException(f"Unknown stage: {name}")


def _current_template(runtime: Runtime, task: Task) -> StageTemplate:
    templates = runtime.store.list_templates()
    if not templates:
        raise click.ClickException("No stage templates found. Run `stagehand init` first.")
    if task.current_stage_id is None:
        return participating_templates(task, templates)[0]
    for template in templates:
        if template.id == task.current_stage_id:
            return template
    raise click.ClickException(f"Task stage no longer exists: {task.current_stage_id}")


def _load_task(runtime: Runtime, task_id: str) -> Task:
    try:
        return runtime.store.get_task(task_id)
    except StagehandError as exc:
        raise click.ClickException(str(exc)) from exc


def _latest_for(runtime: Runtime, task: Task, template: StageTemplate) -> StageExecution:
    execution = latest_attempt(runtime.store.list_executions(task.id), task.id, template.id)
    if execution is None:
        raise click.ClickException(f"Stage '{template.name}' has not run yet.")
    return execution


def _print_execution(execution: StageExecution) -> None:
    click.echo(f"Status: {execution.status}")
    if execution.error_message:
        click.echo(f"Error: {execution.error_message}")
    elif execution.output:
        click.echo(execution.output)


@click.group()
@click.option("--config", "config_value", default="stagehand.toml", show_default=True)
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default=None)
@click.pass_context
def cli(ctx: click.Context, config_value: str, log_level: str | None) -> None:
    """Stagehand CLI."""
    ctx.ensure_object(dict)
    ctx.obj["config_value"] = config_value
    if log_level is None:
        config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
        log_level = load_config(config_path).logging.level
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--agent", type=click.Choice(["claude", "codex"]), default=None)
@click.pass_context
def init_command(ctx: click.Context, agent: str | None) -> None:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, ctx.obj["config_value"])
    config = load_config(config_path)
    if agent:
        config.agent.primary = agent  # type: ignore[assignment]
    if config.project.name == "my-project":
        config.project.name = project_root.name
    save_config(config_path, config)

    store = JsonStateStore(config.state_directory(project_root))
    if not store.list_templates():
        store.save_templates(default_stage_templates())

    click.echo(f"Initialized Stagehand in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.agent.primary}")
    click.echo(f"Stages: {len(store.list_templates())}")


@cli.command("templates")
@click.pass_context
def templates_command(ctx: click.Context) -> None:
    runtime = _load_runtime(ctx)
    for template in runtime.store.list_templates():
        click.echo(
            f"{template.sort_order}. {template.name} "
            f"[{template.output_format}] gate: {describe_gate(template.gate_rule)}"
        )


@cli.group("task")
def task_group() -> None:
    """Create and list tasks."""


@task_group.command("create")
@click.argument("title")
@click.option("--description", default="")
@click.pass_context
def task_create_command(ctx: click.Context, title: str, description: str) -> None:
    runtime = _load_runtime(ctx)
    templates = runtime.store.list_templates()
    task = Task(
        id=new_id(),
        title=title,
        description=description,
        current_stage_id=templates[0].id if templates else None,
    )
    runtime.store.save_task(task)
    click.echo(task.id)


@task_group.command("list")
@click.pass_context
def task_list_command(ctx: click.Context) -> None:
    runtime = _load_runtime(ctx)
    for task in runtime.store.list_tasks():
        click.echo(f"{task.id}  {task.status:<11}  {task.title}")


@cli.command("run")
@click.argument("task_id")
@click.option("--stage", "stage_name", default=None, help="Defaults to the current stage.")
@click.option("--input", "user_input", default=None)
@click.pass_context
def run_command(
    ctx: click.Context, task_id: str, stage_name: str | None, user_input: str | None
) -> None:
    runtime = _load_runtime(ctx)
    task = _load_task(runtime, task_id)
    if stage_name:
        template = _find_template(runtime.store.list_templates(), stage_name)
    else:
        template = _current_template(runtime, task)

    click.echo(f"Running {template.name}")
    execution = _run_monitored(
        runtime, lambda: runtime.machine.start(task, template, user_input=user_input)
    )
    _print_execution(execution)


@cli.command("answer")
@click.argument("task_id")
@click.argument("answers")
@click.pass_context
def answer_command(ctx: click.Context, task_id: str, answers: str) -> None:
    runtime = _load_runtime(ctx)
    task = _load_task(runtime, task_id)
    execution = _latest_for(runtime, task, _current_template(runtime, task))
    updated = _run_monitored(runtime, lambda: runtime.machine.submit_answers(execution, answers))
    _print_execution(updated)


@cli.command("approve")
@click.argument("task_id")
@click.option("--decision", default=None, help="JSON decision for the stage's gate.")
@click.pass_context
def approve_command(ctx: click.Context, task_id: str, decision: str | None) -> None:
    runtime = _load_runtime(ctx)
    task = _load_task(runtime, task_id)
    template = _current_template(runtime, task)
    execution = _latest_for(runtime, task, template)
    _run_monitored(runtime, lambda: runtime.machine.approve(execution, decision))
    click.echo(f"Approved {template.name}")


@cli.command("approve-stages")
@click.argument("task_id")
@click.option("--stage", "stage_names", multiple=True, required=True)
@click.option("--strategy", type=click.Choice(list(COMPLETION_STRATEGIES)), default=None)
@click.pass_context
def approve_stages_command(
    ctx: click.Context, task_id: str, stage_names: tuple[str, ...], strategy: str | None
) -> None:
    runtime = _load_runtime(ctx)
    task = _load_task(runtime, task_id)
    templates = runtime.store.list_templates()
    selected = [_find_template(templates, name).id for name in stage_names]
    template = _current_template(runtime, task)
    execution = _latest_for(runtime, task, template)
    completion_strategy = strategy or runtime.config.pipeline.default_completion_strategy
    _run_monitored(
        runtime,
        lambda: runtime.machine.approve_with_stages(execution, selected, completion_strategy),
    )
    click.echo(f"Approved {template.name} ({completion_strategy}, {len(selected)} stages)")


@cli.command("fail")
@click.argument("task_id")
@click.option("--message", default="Stopped by user", show_default=True)
@click.pass_context
def fail_command(ctx: click.Context, task_id: str, message: str) -> None:
    runtime = _load_runtime(ctx)
    task = _load_task(runtime, task_id)
    execution = _latest_for(runtime, task, _current_template(runtime, task))
    if execution.is_terminal:
        raise click.ClickException(f"Latest attempt is already {execution.status}.")
    runtime.machine.fail(execution, message)
    click.echo(f"Failed {execution.id}: {message}")


@cli.command("status")
@click.argument("task_id")
@click.pass_context
def status_command(ctx: click.Context, task_id: str) -> None:
    runtime = _load_runtime(ctx)
    task = _load_task(runtime, task_id)
    payload = {
        "task": task.to_dict(),
        "executions": [item.to_dict() for item in runtime.store.list_executions(task.id)],
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    cli()
