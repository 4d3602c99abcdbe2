import asyncio
import json
from pathlib import Path

import pytest

from stagehand.runners import (
    AgentCompleted,
    AgentEvent,
    AgentProcessError,
    AgentStarted,
    ClaudeCommand,
    CodexCommand,
    SpawnArgs,
    StderrLine,
    StdoutLine,
    SubprocessAgentRunner,
)


def test_claude_command_flags() -> None:
    args = SpawnArgs(
        prompt="Research it",
        session_id="sess-1",
        json_schema='{"type":"object"}',
        allowed_tools=["Read", "Grep"],
        max_turns=12,
    )

    command = ClaudeCommand("/usr/local/bin/claude").build_command(args)

    assert command[:4] == [
        "/usr/local/bin/claude",
        "--dangerously-skip-permissions",
        "-p",
        "Research it",
    ]
    assert command[command.index("--output-format") + 1] == "stream-json"
    assert "--verbose" in command
    assert command[command.index("--session-id") + 1] == "sess-1"
    assert command[command.index("--json-schema") + 1] == '{"type":"object"}'
    assert [command[i + 1] for i, part in enumerate(command) if part == "--allowedTools"] == [
        "Read",
        "Grep",
    ]
    assert command[command.index("--max-turns") + 1] == "12"
    assert "--no-session-persistence" not in command


def test_claude_command_empty_tool_list_allows_nothing() -> None:
    command = ClaudeCommand().build_command(SpawnArgs(prompt="p", allowed_tools=[]))

    assert command[command.index("--allowedTools") + 1] == "_none_"


def test_codex_command_inlines_schema() -> None:
    args = SpawnArgs(
        prompt="Plan it",
        json_schema='{"type":"object"}',
        allowed_tools=["Read"],
        append_system_prompt="Be brief.",
    )

    command = CodexCommand().build_command(args)

    assert command[:4] == ["codex", "exec", "--json", "--dangerously-bypass-approvals-and-sandbox"]
    assert command[command.index("-c") + 1] == f"instructions={json.dumps('Be brief.')}"
    prompt = command[-1]
    assert prompt.startswith("Plan it\n\n")
    assert '{"type":"object"}' in prompt
    assert '["Read"]' in prompt


def _write_script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "fake-agent"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


async def _collect(runner: SubprocessAgentRunner, args: SpawnArgs) -> list[AgentEvent]:
    return [event async for event in runner.spawn(args)]


def test_subprocess_runner_streams_lines_and_exit_code(tmp_path: Path) -> None:
    script = _write_script(tmp_path, "echo first\necho second\necho oops >&2\nexit 3\n")
    hook_events: list[dict] = []
    runner = SubprocessAgentRunner(
        {"claude": ClaudeCommand(str(script))}, event_hook=hook_events.append
    )

    events = asyncio.run(
        _collect(runner, SpawnArgs(prompt="go", stage_execution_id="exec-1", session_id="s"))
    )

    assert isinstance(events[0], AgentStarted)
    assert events[0].session_id == "s"
    stdout = [event.line for event in events if isinstance(event, StdoutLine)]
    stderr = [event.line for event in events if isinstance(event, StderrLine)]
    assert stdout == ["first", "second"]
    assert stderr == ["oops"]
    assert isinstance(events[-1], AgentCompleted)
    assert events[-1].exit_code == 3
    assert [event["event"] for event in hook_events] == ["agent_spawned", "agent_exited"]
    assert asyncio.run(runner.list_processes()) == []


def test_subprocess_runner_registry_tracks_live_process(tmp_path: Path) -> None:
    script = _write_script(tmp_path, "echo ready\nexec sleep 30\n")
    runner = SubprocessAgentRunner({"claude": ClaudeCommand(str(script))})

    async def scenario() -> tuple[list[str], AgentEvent]:
        stream = runner.spawn(SpawnArgs(prompt="go", stage_execution_id="exec-7"))
        started = await anext(stream)
        assert isinstance(started, AgentStarted)
        await anext(stream)
        detailed = await runner.list_processes_detailed()
        assert detailed[0].stage_execution_id == "exec-7"
        assert detailed[0].agent == "claude"
        await runner.kill_process(started.process_id)
        with pytest.raises(AgentProcessError, match="already sent"):
            await runner.kill_process(started.process_id)
        last = [event async for event in stream][-1]
        return await runner.list_processes(), last

    remaining, last = asyncio.run(scenario())

    assert remaining == []
    assert isinstance(last, AgentCompleted)
    assert last.exit_code is None


def test_subprocess_runner_rejects_unknown_agent() -> None:
    runner = SubprocessAgentRunner({})

    with pytest.raises(AgentProcessError, match="Unknown agent"):
        asyncio.run(_collect(runner, SpawnArgs(prompt="go", agent="gemini")))


def test_subprocess_runner_reports_missing_binary(tmp_path: Path) -> None:
    runner = SubprocessAgentRunner({"claude": ClaudeCommand(str(tmp_path / "missing"))})

    with pytest.raises(AgentProcessError, match="binary not found") as excinfo:
        asyncio.run(_collect(runner, SpawnArgs(prompt="go")))

    assert excinfo.value.retriable is False


def test_kill_unknown_process_fails() -> None:
    runner = SubprocessAgentRunner()

    with pytest.raises(AgentProcessError, match="Process not found"):
        asyncio.run(runner.kill_process("nope"))
