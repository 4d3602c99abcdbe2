from __future__ import annotations

import json

from stagehand.runners.base import SpawnArgs


class CodexCommand:
    name = "codex"

    def __init__(self, binary: str = "codex") -> None:
        self.binary = binary

    @staticmethod
    def _build_prompt(args: SpawnArgs) -> str:
        parts = [args.prompt]
        if args.json_schema:
            parts.append("Respond with a single JSON object matching this schema:")
            parts.append(args.json_schema)
        if args.allowed_tools:
            parts.append("Allowed tools:")
            parts.append(json.dumps(args.allowed_tools, ensure_ascii=False))
        return "\n\n".join(parts)

    def build_command(self, args: SpawnArgs) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "--dangerously-bypass-approvals-and-sandbox",
        ]
        if args.append_system_prompt:
            command.extend(
                [
                    "-c",
                    f"instructions={json.dumps(args.append_system_prompt, ensure_ascii=False)}",
                ]
            )
        command.append(self._build_prompt(args))
        return command
