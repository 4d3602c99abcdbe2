from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Literal


class AgentRunnerError(RuntimeError):
    """Raised when an agent process cannot be run."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code
        self.retriable = retriable


class AgentProcessError(AgentRunnerError):
    """Raised when the agent process lifecycle fails (spawn, pipes, kill)."""


@dataclass(slots=True)
class SpawnArgs:
    prompt: str
    working_directory: str | None = None
    session_id: str | None = None
    stage_execution_id: str | None = None
    append_system_prompt: str | None = None
    json_schema: str | None = None
    allowed_tools: list[str] | None = None
    max_turns: int | None = None
    no_session_persistence: bool = False
    agent: str | None = None
    output_format: str = "stream-json"


@dataclass(slots=True)
class AgentStarted:
    process_id: str
    session_id: str | None = None
    type: Literal["started"] = "started"


@dataclass(slots=True)
class StdoutLine:
    line: str
    type: Literal["stdout_line"] = "stdout_line"


@dataclass(slots=True)
class StderrLine:
    line: str
    type: Literal["stderr_line"] = "stderr_line"


@dataclass(slots=True)
class AgentCompleted:
    process_id: str
    exit_code: int | None = None
    type: Literal["completed"] = "completed"


@dataclass(slots=True)
class AgentFailed:
    process_id: str
    message: str
    type: Literal["error"] = "error"


AgentEvent = AgentStarted | StdoutLine | StderrLine | AgentCompleted | AgentFailed


@dataclass(slots=True)
class ProcessInfo:
    process_id: str
    stage_execution_id: str | None = None
    session_id: str | None = None
    agent: str | None = field(default=None)


class AgentRunner(ABC):
    @abstractmethod
    def spawn(self, args: SpawnArgs) -> AsyncIterator[AgentEvent]:
        """Start an agent process and stream its events in emission order.

        ``started`` is the first event, ``completed`` or ``error`` the last.
        """

    @abstractmethod
    async def list_processes(self) -> list[str]:
        """Ids of the agent processes currently alive."""

    @abstractmethod
    async def kill_process(self, process_id: str) -> None:
        """Terminate a running agent process."""

    async def list_processes_detailed(self) -> list[ProcessInfo]:
        return [ProcessInfo(process_id=process_id) for process_id in await self.list_processes()]
