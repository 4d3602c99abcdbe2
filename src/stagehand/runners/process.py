from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import uuid4

from stagehand.runners.base import (
    AgentCompleted,
    AgentEvent,
    AgentProcessError,
    AgentRunner,
    AgentStarted,
    ProcessInfo,
    SpawnArgs,
    StderrLine,
    StdoutLine,
)
from stagehand.runners.claude import ClaudeCommand
from stagehand.runners.codex import CodexCommand

logger = logging.getLogger(__name__)

STREAM_LIMIT_BYTES = 16 * 1024 * 1024

RunnerEventHook = Callable[[dict[str, Any]], None]


class CommandBuilder(Protocol):
    name: str

    def build_command(self, args: SpawnArgs) -> list[str]: ...


@dataclass(slots=True)
class _TrackedProcess:
    process: asyncio.subprocess.Process
    info: ProcessInfo
    killed: bool = False


class SubprocessAgentRunner(AgentRunner):
    """Runs agent CLIs as child processes and keeps a registry of live ones."""

    def __init__(
        self,
        commands: dict[str, CommandBuilder] | None = None,
        *,
        default_agent: str = "claude",
        event_hook: RunnerEventHook | None = None,
    ) -> None:
        self.commands: dict[str, CommandBuilder] = commands or {
            "claude": ClaudeCommand(),
            "codex": CodexCommand(),
        }
        self.default_agent = default_agent
        self.event_hook = event_hook
        self._processes: dict[str, _TrackedProcess] = {}

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def spawn(self, args: SpawnArgs) -> AsyncIterator[AgentEvent]:
        agent = args.agent or self.default_agent
        builder = self.commands.get(agent)
        if builder is None:
            raise AgentProcessError(f"Unknown agent: {agent}", agent=agent, retriable=False)

        command = builder.build_command(args)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=args.working_directory,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"Agent binary not found: {command[0]}", agent=agent, retriable=False
            ) from exc
        if process.stdout is None or process.stderr is None:
            raise AgentProcessError(
                f"Agent {agent} did not expose stdout/stderr.", agent=agent, retriable=False
            )

        process_id = str(uuid4())
        tracked = _TrackedProcess(
            process=process,
            info=ProcessInfo(
                process_id=process_id,
                stage_execution_id=args.stage_execution_id,
                session_id=args.session_id,
                agent=agent,
            ),
        )
        self._processes[process_id] = tracked
        logger.info("Spawned %s process %s (pid %s)", agent, process_id, process.pid)
        self._emit({"event": "agent_spawned", "agent": agent, "process_id": process_id})

        queue: asyncio.Queue[AgentEvent | None] = asyncio.Queue()

        async def _pump(stream: asyncio.StreamReader, factory: Callable[[str], AgentEvent]) -> None:
            try:
                async for raw_line in stream:
                    line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                    await queue.put(factory(line))
            finally:
                await queue.put(None)

        readers = [
            asyncio.create_task(_pump(process.stdout, StdoutLine)),
            asyncio.create_task(_pump(process.stderr, StderrLine)),
        ]
        try:
            yield AgentStarted(process_id=process_id, session_id=args.session_id)
            open_streams = len(readers)
            while open_streams:
                event = await queue.get()
                if event is None:
                    open_streams -= 1
                    continue
                yield event
            return_code = await process.wait()
            exit_code = None if tracked.killed else return_code
            self._emit(
                {"event": "agent_exited", "process_id": process_id, "exit_code": exit_code}
            )
            yield AgentCompleted(process_id=process_id, exit_code=exit_code)
        finally:
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            if process.returncode is None:
                process.kill()
                await process.wait()
            self._processes.pop(process_id, None)

    async def list_processes(self) -> list[str]:
        return list(self._processes)

    async def list_processes_detailed(self) -> list[ProcessInfo]:
        return [tracked.info for tracked in self._processes.values()]

    async def kill_process(self, process_id: str) -> None:
        tracked = self._processes.get(process_id)
        if tracked is None:
            raise AgentProcessError(f"Process not found: {process_id}", retriable=False)
        if tracked.killed:
            raise AgentProcessError(f"Kill signal already sent: {process_id}", retriable=False)
        tracked.killed = True
        try:
            tracked.process.terminate()
        except ProcessLookupError:
            logger.debug("Process %s already exited before kill", process_id)
        self._emit({"event": "agent_killed", "process_id": process_id})
