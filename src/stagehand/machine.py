from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stagehand.config import StagehandConfig
from stagehand.detection import has_own_output_action
from stagehand.errors import (
    GateValidationError,
    InvalidTransitionError,
    StageAlreadyRunningError,
    StagehandError,
)
from stagehand.extraction import (
    extract_json,
    extract_stage_output,
    extract_stage_summary,
    parse_agent_stream_line,
)
from stagehand.gates import describe_gate, should_auto_start_stage, validate_gate
from stagehand.models import (
    COMPLETION_STRATEGIES,
    StageExecution,
    StageTemplate,
    Task,
    new_id,
    utcnow_iso,
)
from stagehand.pipeline import (
    active_attempt,
    attempts_for,
    latest_approved,
    latest_attempt,
    next_template,
    previous_template,
)
from stagehand.prompt import build_prompt_context, render_prompt
from stagehand.runners.base import (
    AgentCompleted,
    AgentFailed,
    AgentRunner,
    AgentRunnerError,
    AgentStarted,
    SpawnArgs,
    StderrLine,
    StdoutLine,
)
from stagehand.state import JsonStateStore

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]

STOPPED_BY_USER = "Stopped by user"


def stage_key(task_id: str, stage_template_id: str) -> str:
    return f"{task_id}:{stage_template_id}"


@dataclass(slots=True)
class StageProcessState:
    """In-memory view of the agent process backing one (task, stage) pair."""

    task_id: str
    stage_template_id: str
    execution_id: str | None = None
    process_id: str | None = None
    is_running: bool = False
    killed: bool = False
    last_output_at: float | None = None
    stream_output: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _RunResult:
    raw_lines: list[str] = field(default_factory=list)
    result_text: str = ""
    thinking_text: str = ""
    usage: dict[str, Any] | None = None
    completed: bool = False
    exit_code: int | None = None
    error_message: str | None = None


class StageExecutionStateMachine:
    def __init__(
        self,
        store: JsonStateStore,
        runner: AgentRunner,
        config: StagehandConfig | None = None,
        *,
        working_directory: Path | None = None,
        event_hook: EventHook | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.runner = runner
        self.config = config or StagehandConfig.default()
        self.working_directory = working_directory
        self.event_hook = event_hook
        self.clock = clock
        self._subscribers: list[EventHook] = []
        self._stages: dict[str, StageProcessState] = {}

    # Observers

    def subscribe(self, callback: EventHook) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)
        for callback in list(self._subscribers):
            callback(payload)

    # Process tracking

    def process_state(self, task_id: str, stage_template_id: str) -> StageProcessState:
        key = stage_key(task_id, stage_template_id)
        state = self._stages.get(key)
        if state is None:
            state = StageProcessState(task_id=task_id, stage_template_id=stage_template_id)
            self._stages[key] = state
        return state

    def running_stages(self) -> list[StageProcessState]:
        return [state for state in self._stages.values() if state.is_running]

    def set_stopped(self, task_id: str, stage_template_id: str) -> None:
        state = self.process_state(task_id, stage_template_id)
        state.is_running = False
        state.process_id = None

    def _set_running(self, task_id: str, stage_template_id: str, execution_id: str) -> None:
        state = self.process_state(task_id, stage_template_id)
        state.execution_id = execution_id
        state.process_id = None
        state.is_running = True
        state.killed = False
        state.last_output_at = self.clock()
        state.stream_output = []

    def _append_output(self, state: StageProcessState, line: str) -> None:
        state.stream_output.append(line)
        state.last_output_at = self.clock()

    # Queries

    def templates(self) -> list[StageTemplate]:
        return self.store.list_templates()

    def reload_executions(self, task_id: str) -> list[StageExecution]:
        executions = self.store.list_executions(task_id)
        self._emit({"event": "executions_reloaded", "task_id": task_id, "count": len(executions)})
        return executions

    # Running a stage

    async def start(
        self,
        task: Task,
        template: StageTemplate,
        *,
        user_input: str | None = None,
    ) -> StageExecution:
        """Run one attempt of ``template`` for ``task`` until the agent stops.

        Raises ``StageAlreadyRunningError`` without touching the store when an
        attempt for the same pair is still running or awaiting the user.
        """
        executions = self.store.list_executions(task.id)
        active = active_attempt(executions, task.id, template.id)
        if active is not None or self.process_state(task.id, template.id).is_running:
            raise StageAlreadyRunningError(
                f"Stage '{template.name}' already has an active attempt.",
                task_id=task.id,
                stage_template_id=template.id,
            )

        templates = self.templates()
        context = build_prompt_context(
            task, template, templates, executions, user_input=user_input
        )
        prompt = render_prompt(template.prompt_template, context)
        previous = latest_attempt(executions, task.id, template.id)
        attempt_number = previous.attempt_number + 1 if previous is not None else 1

        execution = StageExecution(
            id=new_id(),
            task_id=task.id,
            stage_template_id=template.id,
            attempt_number=attempt_number,
            status="running",
            input_prompt=prompt,
            user_input=user_input,
            session_id=new_id(),
            owner_pid=os.getpid(),
        )
        # create_execution repeats the active-attempt check inside its write.
        self.store.create_execution(execution)
        self._set_running(task.id, template.id, execution.id)
        self.store.update_task(task.id, current_stage_id=template.id, status="in_progress")
        logger.info(
            "Starting stage %s attempt %d for task %s", template.name, attempt_number, task.id
        )
        self._emit(
            {
                "event": "stage_started",
                "task_id": task.id,
                "stage_template_id": template.id,
                "execution_id": execution.id,
                "attempt_number": attempt_number,
            }
        )
        return await self._run(task, template, execution, prompt)

    async def redo(
        self,
        task: Task,
        template: StageTemplate,
        *,
        feedback: str | None = None,
    ) -> StageExecution:
        """Start a new attempt after the latest one was approved or failed."""
        executions = self.store.list_executions(task.id)
        if latest_attempt(executions, task.id, template.id) is None:
            raise InvalidTransitionError(f"Stage '{template.name}' has not run yet.")
        return await self.start(task, template, user_input=feedback)

    async def submit_answers(self, execution: StageExecution, answers: str) -> StageExecution:
        """Send follow-up answers back to the agent within the same attempt."""
        current = self.store.get_execution(execution.id)
        if current.status != "awaiting_user":
            raise InvalidTransitionError(
                f"Cannot submit answers to an execution in status '{current.status}'."
            )
        if not answers.strip():
            raise StagehandError("Answers must not be empty.")
        task = self.store.get_task(current.task_id)
        template = self.store.get_template(current.stage_template_id)
        merged = answers
        if current.user_input:
            merged = f"{current.user_input}\n\n---\n\nAnswers to follow-up questions:\n{answers}"

        other_executions = [
            item for item in self.store.list_executions(task.id) if item.id != current.id
        ]
        context = build_prompt_context(task, template, self.templates(), other_executions)
        context.user_input = merged
        context.prior_attempt_output = current.output or None
        prompt = render_prompt(template.prompt_template, context)

        self._set_running(task.id, template.id, current.id)
        updated = self.store.update_execution(
            current.id,
            status="running",
            user_input=merged,
            input_prompt=prompt,
            owner_pid=os.getpid(),
            completed_at=None,
        )
        self._emit(
            {
                "event": "stage_started",
                "task_id": task.id,
                "stage_template_id": template.id,
                "execution_id": current.id,
                "attempt_number": current.attempt_number,
            }
        )
        return await self._run(task, template, updated, prompt)

    def _spawn_args(
        self, template: StageTemplate, execution: StageExecution, prompt: str
    ) -> SpawnArgs:
        json_schema = None
        if template.output_format != "text" and template.output_schema:
            json_schema = template.output_schema
        return SpawnArgs(
            prompt=prompt,
            working_directory=str(self.working_directory) if self.working_directory else None,
            session_id=execution.session_id,
            stage_execution_id=execution.id,
            append_system_prompt=template.persona_system_prompt,
            json_schema=json_schema,
            allowed_tools=template.allowed_tool_list,
            max_turns=self.config.agent.max_turns or None,
            agent=template.agent or self.config.agent.primary,
        )

    async def _run(
        self,
        task: Task,
        template: StageTemplate,
        execution: StageExecution,
        prompt: str,
    ) -> StageExecution:
        state = self.process_state(task.id, template.id)
        result = _RunResult()
        try:
            async for event in self.runner.spawn(self._spawn_args(template, execution, prompt)):
                if isinstance(event, AgentStarted):
                    state.process_id = event.process_id
                    state.last_output_at = self.clock()
                    self._emit(
                        {
                            "event": "process_started",
                            "task_id": task.id,
                            "stage_template_id": template.id,
                            "execution_id": execution.id,
                            "process_id": event.process_id,
                        }
                    )
                elif isinstance(event, StdoutLine):
                    self._consume_stdout(state, result, event.line)
                    self._emit(
                        {
                            "event": "stage_output",
                            "task_id": task.id,
                            "stage_template_id": template.id,
                            "line": event.line,
                        }
                    )
                elif isinstance(event, StderrLine):
                    self._append_output(state, f"[stderr] {event.line}")
                    logger.debug("Agent stderr (%s): %s", execution.id, event.line)
                elif isinstance(event, AgentCompleted):
                    result.completed = True
                    result.exit_code = event.exit_code
                elif isinstance(event, AgentFailed):
                    result.error_message = event.message
        except (AgentRunnerError, OSError) as exc:
            logger.warning("Agent run for stage %s failed: %s", template.name, exc)
            result.error_message = str(exc) or exc.__class__.__name__

        return self._finalize(task, template, execution, result)

    def _consume_stdout(self, state: StageProcessState, result: _RunResult, line: str) -> None:
        result.raw_lines.append(line)
        parsed = parse_agent_stream_line(line)
        if parsed is None:
            self._append_output(state, line)
            return
        if parsed.assistant_text:
            result.result_text += parsed.assistant_text
            result.thinking_text += parsed.assistant_text
            self._append_output(state, parsed.assistant_text)
        if parsed.result_text is not None:
            # The terminal result replaces the streamed assistant text.
            result.result_text = parsed.result_text
            self._append_output(state, parsed.result_text)
        if parsed.usage is not None:
            result.usage = parsed.usage
        state.last_output_at = self.clock()

    def _finalize(
        self,
        task: Task,
        template: StageTemplate,
        execution: StageExecution,
        result: _RunResult,
    ) -> StageExecution:
        state = self.process_state(task.id, template.id)
        was_killed = state.killed
        self.set_stopped(task.id, template.id)

        current = self.store.get_execution(execution.id)
        if current.is_terminal:
            logger.info("Execution %s already %s; ignoring late result", current.id, current.status)
            return current

        raw_output = "\n".join(result.raw_lines)
        thinking = result.thinking_text.strip() or None
        changes: dict[str, Any] = {
            "raw_output": raw_output,
            "thinking_output": thinking,
            "completed_at": utcnow_iso(),
        }
        if result.usage:
            changes.update(result.usage)

        failure: str | None = None
        if was_killed:
            failure = STOPPED_BY_USER
        elif result.error_message is not None:
            failure = result.error_message
        elif not result.completed:
            failure = "Process ended without reporting an exit code"
        elif result.exit_code is None:
            failure = STOPPED_BY_USER
        elif result.exit_code != 0:
            failure = f"Process exited with code {result.exit_code}"

        if failure is not None:
            changes.update(
                {
                    "status": "failed",
                    "parsed_output": result.result_text or None,
                    "error_message": failure,
                }
            )
            updated = self.store.update_execution(execution.id, **changes)
            logger.warning("Stage %s failed: %s", template.name, failure)
            self._emit(
                {
                    "event": "stage_failed",
                    "task_id": task.id,
                    "stage_template_id": template.id,
                    "execution_id": execution.id,
                    "message": failure,
                }
            )
            return updated

        parsed_output = result.result_text or None
        if template.output_format != "text":
            parsed_output = (
                extract_json(result.result_text) or extract_json(raw_output) or parsed_output
            )
        changes.update({"status": "awaiting_user", "parsed_output": parsed_output})
        updated = self.store.update_execution(execution.id, **changes)

        needs_decision = template.requires_user_input or has_own_output_action(
            updated.output, template.output_format
        )
        self._emit(
            {
                "event": "stage_awaiting_user" if needs_decision else "stage_ready",
                "task_id": task.id,
                "stage_template_id": template.id,
                "execution_id": execution.id,
            }
        )
        return updated

    # Gate decisions

    def _previous_result(self, task: Task, template: StageTemplate) -> str | None:
        previous = previous_template(task, self.templates(), template)
        if previous is None:
            return None
        approved = latest_approved(self.store.list_executions(task.id), task.id, previous.id)
        return approved.stage_result if approved is not None else None

    def _compose_result(self, task: Task, template: StageTemplate, own_output: str) -> str:
        previous_result = self._previous_result(task, template)
        if template.result_mode == "append":
            if previous_result:
                return f"{previous_result}\n\n---\n\n{own_output}"
            return own_output
        if template.result_mode == "passthrough":
            return previous_result if previous_result is not None else own_output
        return own_output

    def _check_gate(self, current: StageExecution, decision: str | None) -> StageTemplate:
        template = self.store.get_template(current.stage_template_id)
        rule = template.gate_rule
        if not validate_gate(rule, decision, current):
            raise GateValidationError(
                f"Decision does not satisfy the gate: {describe_gate(rule)}.",
                rule=rule,
                decision=decision,
            )
        return template

    async def approve(
        self, execution: StageExecution, decision: str | None = None
    ) -> StageExecution:
        """Check the gate, record the decision and advance the task."""
        current = self.store.get_execution(execution.id)
        if current.status != "awaiting_user":
            raise InvalidTransitionError(
                f"Cannot approve an execution in status '{current.status}'."
            )
        template = self._check_gate(current, decision)

        task = self.store.get_task(current.task_id)
        own_output = extract_stage_output(template, current, decision)
        approved = self.store.update_execution(
            current.id,
            status="approved",
            user_decision=decision,
            stage_result=self._compose_result(task, template, own_output),
            stage_summary=extract_stage_summary(template, current, decision),
            completed_at=current.completed_at or utcnow_iso(),
        )
        self._emit(
            {
                "event": "stage_approved",
                "task_id": task.id,
                "stage_template_id": template.id,
                "execution_id": approved.id,
            }
        )

        following = next_template(task, self.templates(), template)
        if following is None:
            self.store.update_task(task.id, status="completed")
            logger.info("Task %s completed", task.id)
            self._emit({"event": "task_completed", "task_id": task.id})
            return approved

        task = self.store.update_task(task.id, current_stage_id=following.id)
        self._emit(
            {
                "event": "task_advanced",
                "task_id": task.id,
                "stage_template_id": following.id,
            }
        )
        if self.config.pipeline.auto_start_next and should_auto_start_stage(following):
            await self.start(task, following)
        return approved

    @staticmethod
    def suggested_stages(execution: StageExecution) -> list[str] | None:
        """Stage names the agent proposed for this task, if its output has them."""
        raw = extract_json(execution.output)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(data, dict) or not isinstance(data.get("suggested_stages"), list):
            return None
        names: list[str] = []
        for item in data["suggested_stages"]:
            if isinstance(item, str):
                names.append(item)
            elif isinstance(item, dict) and isinstance(item.get("name"), str):
                names.append(item["name"])
        return names

    async def approve_with_stages(
        self,
        execution: StageExecution,
        selected_stage_ids: list[str],
        completion_strategy: str,
        decision: str | None = None,
    ) -> StageExecution:
        """Approve the research stage and record which later stages take part."""
        if completion_strategy not in COMPLETION_STRATEGIES:
            raise StagehandError(f"Unknown completion strategy: {completion_strategy}")
        current = self.store.get_execution(execution.id)
        if current.status != "awaiting_user":
            raise InvalidTransitionError(
                f"Cannot approve an execution in status '{current.status}'."
            )
        known = {template.id for template in self.templates()}
        unknown = [stage_id for stage_id in selected_stage_ids if stage_id not in known]
        if unknown:
            raise StagehandError(f"Unknown stage template ids: {', '.join(unknown)}")
        self._check_gate(current, decision)

        self.store.update_task(
            current.task_id,
            selected_stage_ids=list(selected_stage_ids),
            completion_strategy=completion_strategy,
        )
        self._emit(
            {
                "event": "stages_selected",
                "task_id": current.task_id,
                "stage_template_ids": list(selected_stage_ids),
                "completion_strategy": completion_strategy,
            }
        )
        return await self.approve(current, decision)

    # Failure paths

    def fail(self, execution: StageExecution, message: str) -> StageExecution:
        """Mark an attempt failed. Failing a terminal attempt changes nothing."""
        current = self.store.get_execution(execution.id)
        if current.is_terminal:
            return current
        updated = self.store.update_execution(
            current.id,
            status="failed",
            error_message=message,
            completed_at=utcnow_iso(),
        )
        self.set_stopped(current.task_id, current.stage_template_id)
        logger.warning("Execution %s failed: %s", current.id, message)
        self._emit(
            {
                "event": "stage_failed",
                "task_id": current.task_id,
                "stage_template_id": current.stage_template_id,
                "execution_id": current.id,
                "message": message,
            }
        )
        return updated

    async def kill(self, task_id: str, stage_template_id: str) -> StageExecution | None:
        """Stop the running attempt for a stage and record it as failed."""
        state = self.process_state(task_id, stage_template_id)
        executions = self.store.list_executions(task_id)
        running = [
            item
            for item in attempts_for(executions, task_id, stage_template_id)
            if item.status == "running"
        ]
        if not running and not state.is_running:
            return None

        state.killed = True
        if state.process_id is not None:
            try:
                await self.runner.kill_process(state.process_id)
            except AgentRunnerError as exc:
                logger.info("Kill for %s ignored: %s", state.process_id, exc)
        self._emit(
            {
                "event": "stage_killed",
                "task_id": task_id,
                "stage_template_id": stage_template_id,
                "process_id": state.process_id,
            }
        )
        if not running:
            return None
        return self.fail(running[-1], STOPPED_BY_USER)
