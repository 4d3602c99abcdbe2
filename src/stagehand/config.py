from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Literal

AgentName = Literal["claude", "codex"]
CompletionStrategyName = Literal["pr", "direct_merge", "none"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    working_directory: str = "."


@dataclass(slots=True)
class AgentConfig:
    primary: AgentName = "claude"
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    max_turns: int = 0


@dataclass(slots=True)
class HealthConfig:
    poll_interval_seconds: float = 5.0
    inactivity_timeout_seconds: float = 600.0


@dataclass(slots=True)
class PipelineConfig:
    default_completion_strategy: CompletionStrategyName = "pr"
    auto_start_next: bool = True


@dataclass(slots=True)
class StateConfig:
    directory: str = ".stagehand/state"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "WARNING"


@dataclass(slots=True)
class StagehandConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> StagehandConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> StagehandConfig:
        sections = {}
        for item in fields(cls):
            section_type = _SECTION_TYPES[item.name]
            sections[item.name] = section_type(**data.get(item.name, {}))
        return cls(**sections)

    def to_dict(self) -> dict:
        return asdict(self)

    def state_directory(self, project_root: Path) -> Path:
        directory = Path(self.state.directory)
        if not directory.is_absolute():
            directory = project_root / directory
        return directory.resolve()


_SECTION_TYPES: dict[str, type] = {
    "project": ProjectConfig,
    "agent": AgentConfig,
    "health": HealthConfig,
    "pipeline": PipelineConfig,
    "state": StateConfig,
    "logging": LoggingConfig,
}


def _format_scalar(value: object) -> str:
    # bool before int: True is an int too.
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return repr(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, int):
        return str(value)
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: StagehandConfig) -> str:
    blocks = []
    for section, values in config.to_dict().items():
        body = "\n".join(f"{key} = {_format_scalar(value)}" for key, value in values.items())
        blocks.append(f"[{section}]\n{body}")
    return "\n\n".join(blocks) + "\n"


def load_config(path: Path) -> StagehandConfig:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return StagehandConfig.default()
    return StagehandConfig.from_dict(tomllib.loads(raw))


def save_config(path: Path, config: StagehandConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
