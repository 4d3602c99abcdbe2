from stagehand.runners.base import (
    AgentCompleted,
    AgentEvent,
    AgentFailed,
    AgentProcessError,
    AgentRunner,
    AgentRunnerError,
    AgentStarted,
    ProcessInfo,
    SpawnArgs,
    StderrLine,
    StdoutLine,
)
from stagehand.runners.claude import ClaudeCommand
from stagehand.runners.codex import CodexCommand
from stagehand.runners.process import SubprocessAgentRunner

__all__ = [
    "AgentCompleted",
    "AgentEvent",
    "AgentFailed",
    "AgentProcessError",
    "AgentRunner",
    "AgentRunnerError",
    "AgentStarted",
    "ClaudeCommand",
    "CodexCommand",
    "ProcessInfo",
    "SpawnArgs",
    "StderrLine",
    "StdoutLine",
    "SubprocessAgentRunner",
]
