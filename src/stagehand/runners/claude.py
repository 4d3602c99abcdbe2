from __future__ import annotations

from stagehand.runners.base import SpawnArgs


class ClaudeCommand:
    name = "claude"

    def __init__(self, binary: str = "claude") -> None:
        self.binary = binary

    def build_command(self, args: SpawnArgs) -> list[str]:
        command = [
            self.binary,
            "--dangerously-skip-permissions",
            "-p",
            args.prompt,
            "--output-format",
            args.output_format,
        ]
        if args.output_format == "stream-json":
            command.append("--verbose")
        if args.session_id:
            command.extend(["--session-id", args.session_id])
        if args.append_system_prompt:
            command.extend(["--append-system-prompt", args.append_system_prompt])
        if args.json_schema:
            command.extend(["--json-schema", args.json_schema])
        if args.no_session_persistence:
            command.append("--no-session-persistence")
        if args.allowed_tools is not None:
            # An empty allow-list still has to restrict the CLI to zero tools.
            tools = args.allowed_tools or ["_none_"]
            for tool in tools:
                command.extend(["--allowedTools", tool])
        if args.max_turns:
            command.extend(["--max-turns", str(args.max_turns)])
        return command
