from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import Any

from stagehand.machine import StageExecutionStateMachine, stage_key
from stagehand.models import StageExecution
from stagehand.runners.base import AgentRunner, AgentRunnerError

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 5.0
INACTIVITY_TIMEOUT_SECONDS = 10 * 60.0

CRASHED_MESSAGE = "Process crashed unexpectedly"
LOST_CONNECTION_MESSAGE = "Process lost connection"
TIMED_OUT_MESSAGE = "Process timed out (no output for 10 minutes)"

# Events after which the stage no longer has a live agent process.
_STOP_EVENTS = frozenset({"stage_awaiting_user", "stage_ready", "stage_failed", "stage_killed"})


def _owned_elsewhere(execution: StageExecution) -> bool:
    pid = execution.owner_pid
    if pid is None or pid == os.getpid():
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProcessHealthMonitor:
    """Polls the agent runner for every running stage and fails dead or silent ones.

    One asyncio task runs per (task, stage) pair. A failed liveness query skips
    the whole cycle so an unreachable backend never reports a false crash.
    """

    def __init__(
        self,
        machine: StageExecutionStateMachine,
        runner: AgentRunner | None = None,
        *,
        interval_seconds: float = POLL_INTERVAL_SECONDS,
        inactivity_timeout_seconds: float = INACTIVITY_TIMEOUT_SECONDS,
        clock: Callable[[], float] | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.machine = machine
        self.runner = runner or machine.runner
        self.interval_seconds = interval_seconds
        self.inactivity_timeout_seconds = inactivity_timeout_seconds
        self.clock = clock or machine.clock
        self.event_hook = event_hook
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._unsubscribe: Callable[[], None] | None = None

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    # Lifecycle

    def attach(self) -> None:
        """Watch stages as the state machine starts them and drop them when they stop."""
        if self._unsubscribe is None:
            self._unsubscribe = self.machine.subscribe(self._on_machine_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_machine_event(self, payload: dict[str, Any]) -> None:
        event = payload.get("event")
        task_id = payload.get("task_id")
        stage_template_id = payload.get("stage_template_id")
        if not task_id or not stage_template_id:
            return
        if event == "stage_started":
            self.watch(task_id, stage_template_id)
        elif event in _STOP_EVENTS:
            self._cancel(stage_key(task_id, stage_template_id))

    def is_watching(self, task_id: str, stage_template_id: str) -> bool:
        watcher = self._watchers.get(stage_key(task_id, stage_template_id))
        return watcher is not None and not watcher.done()

    def watch(self, task_id: str, stage_template_id: str) -> asyncio.Task[None]:
        key = stage_key(task_id, stage_template_id)
        existing = self._watchers.get(key)
        if existing is not None and not existing.done():
            return existing
        watcher = asyncio.get_running_loop().create_task(
            self._watch_loop(task_id, stage_template_id), name=f"health:{key}"
        )
        self._watchers[key] = watcher
        watcher.add_done_callback(lambda _: self._forget(key, watcher))
        return watcher

    def _forget(self, key: str, watcher: asyncio.Task[None]) -> None:
        if self._watchers.get(key) is watcher:
            del self._watchers[key]

    def _cancel(self, key: str) -> asyncio.Task[None] | None:
        watcher = self._watchers.get(key)
        if watcher is None or watcher.done():
            return None
        # A watcher that fails its own stage exits on its own.
        if watcher is asyncio.current_task():
            return None
        watcher.cancel()
        return watcher

    async def watch_running(self, task_id: str | None = None) -> list[StageExecution]:
        """Check executions the store already lists as running, then keep watching them.

        Attempts left running by a process that is gone fail right away instead
        of blocking new attempts. Attempts owned by another live process are
        left alone. Returns the executions that were marked failed.
        """
        failed: list[StageExecution] = []
        for execution in self.machine.store.list_executions(task_id):
            if execution.status != "running" or _owned_elsewhere(execution):
                continue
            message = await self.check_once(execution.task_id, execution.stage_template_id)
            if message is None:
                self.watch(execution.task_id, execution.stage_template_id)
            else:
                failed.append(self.machine.store.get_execution(execution.id))
        return failed

    async def unwatch(self, task_id: str, stage_template_id: str) -> None:
        watcher = self._cancel(stage_key(task_id, stage_template_id))
        if watcher is not None:
            await asyncio.gather(watcher, return_exceptions=True)

    async def stop_all(self) -> None:
        self.detach()
        watchers = [self._cancel(key) for key in list(self._watchers)]
        pending = [watcher for watcher in watchers if watcher is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _watch_loop(self, task_id: str, stage_template_id: str) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            if not self._running_execution(task_id, stage_template_id):
                return
            if await self.check_once(task_id, stage_template_id) is not None:
                return

    # Checks

    def _running_execution(self, task_id: str, stage_template_id: str) -> StageExecution | None:
        for execution in self.machine.store.list_executions(task_id):
            if execution.stage_template_id == stage_template_id and execution.status == "running":
                return execution
        return None

    async def check_once(self, task_id: str, stage_template_id: str) -> str | None:
        """Run one liveness and inactivity check; return the failure message, if any."""
        execution = self._running_execution(task_id, stage_template_id)
        if execution is None:
            return None
        state = self.machine.process_state(task_id, stage_template_id)
        process_id = state.process_id

        try:
            processes = await self.runner.list_processes_detailed()
        except (AgentRunnerError, OSError) as exc:
            logger.info("Health check skipped for %s: %s", execution.id, exc)
            self._emit(
                {
                    "event": "health_check_skipped",
                    "task_id": task_id,
                    "stage_template_id": stage_template_id,
                    "reason": str(exc),
                }
            )
            return None

        live_ids = {info.process_id for info in processes}
        if process_id is not None and process_id not in live_ids:
            return self._mark_failed(execution, CRASHED_MESSAGE)

        if process_id is None and not state.is_running:
            # Nothing tracked locally, so the stream that owned this attempt is gone.
            for info in processes:
                if info.stage_execution_id != execution.id:
                    continue
                try:
                    await self.runner.kill_process(info.process_id)
                except AgentRunnerError as exc:
                    logger.info("Orphaned process %s already exiting: %s", info.process_id, exc)
            return self._mark_failed(execution, LOST_CONNECTION_MESSAGE)

        last_output_at = state.last_output_at
        if (
            last_output_at is not None
            and self.clock() - last_output_at > self.inactivity_timeout_seconds
        ):
            failed = self._mark_failed(execution, TIMED_OUT_MESSAGE)
            if process_id is not None:
                try:
                    await self.runner.kill_process(process_id)
                except AgentRunnerError as exc:
                    logger.info("Timed out process %s already exiting: %s", process_id, exc)
            return failed
        return None

    def _mark_failed(self, execution: StageExecution, message: str) -> str:
        logger.warning("Health check failed for execution %s: %s", execution.id, message)
        self.machine.fail(execution, message)
        self.machine.set_stopped(execution.task_id, execution.stage_template_id)
        self.machine.reload_executions(execution.task_id)
        self._emit(
            {
                "event": "health_check_failed",
                "task_id": execution.task_id,
                "stage_template_id": execution.stage_template_id,
                "execution_id": execution.id,
                "message": message,
            }
        )
        return message
