from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskpilot.state.checkpoints import DEFAULT_EXCLUDES
from taskpilot.tools.registry import DEFAULT_MODES

CONFIG_FILENAME = "taskpilot.toml"

CheckpointStorageName = Literal["git", "directory"]
LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class BackendConfig:
    primary_command: list[str] = field(
        default_factory=lambda: [
            "claude",
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--system-prompt-file",
            "{system_prompt_file}",
        ]
    )
    fallback_command: list[str] = field(default_factory=list)
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class LoopConfig:
    mistake_limit: int = 3
    repetition_threshold: int = 3
    repetition_window: int = 10
    max_requests: int = 0
    context_window: int = 128_000
    response_reserve: int = 8_192
    keep_recent_turns: int = 4
    token_encoding: str = "cl100k_base"


@dataclass(slots=True)
class ToolsConfig:
    mode: str = "code"
    diff_enabled: bool = True
    auto_approve_read: bool = True
    auto_approve_edit: bool = False
    auto_approve_command: bool = False
    always_allow: list[str] = field(default_factory=list)
    command_timeout_seconds: float = 600.0


@dataclass(slots=True)
class CheckpointsConfig:
    enabled: bool = True
    storage: CheckpointStorageName = "git"
    exclude: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDES))


@dataclass(slots=True)
class StateConfig:
    directory: str = ".taskpilot"


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevelName = "WARNING"


@dataclass(slots=True)
class TaskpilotConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    checkpoints: CheckpointsConfig = field(default_factory=CheckpointsConfig)
    modes: dict[str, list[str]] = field(
        default_factory=lambda: {name: list(groups) for name, groups in DEFAULT_MODES.items()}
    )
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> TaskpilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskpilotConfig:
        modes = data.get("modes")
        config = cls(
            backend=BackendConfig(**data.get("backend", {})),
            loop=LoopConfig(**data.get("loop", {})),
            tools=ToolsConfig(**data.get("tools", {})),
            checkpoints=CheckpointsConfig(**data.get("checkpoints", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )
        if modes:
            config.modes = {str(name): [str(g) for g in groups] for name, groups in modes.items()}
        config.validate()
        return config

    def validate(self) -> None:
        if self.tools.mode not in self.modes:
            raise ValueError(f"[tools] mode '{self.tools.mode}' is not defined under [modes].")
        if self.checkpoints.storage not in ("git", "directory"):
            raise ValueError(f"Unsupported checkpoint storage: {self.checkpoints.storage}")
        if self.loop.mistake_limit < 1 or self.loop.repetition_threshold < 1:
            raise ValueError("mistake_limit and repetition_threshold must be at least 1.")
        if not self.backend.primary_command:
            raise ValueError("[backend] primary_command must not be empty.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend": asdict(self.backend),
            "loop": asdict(self.loop),
            "tools": asdict(self.tools),
            "checkpoints": asdict(self.checkpoints),
            "modes": {name: list(groups) for name, groups in self.modes.items()},
            "state": asdict(self.state),
            "logging": asdict(self.logging),
        }

    def state_dir(self, workspace: Path) -> Path:
        directory = Path(self.state.directory)
        return directory if directory.is_absolute() else workspace / directory


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskpilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["backend", "loop", "tools", "checkpoints", "modes", "state", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskpilotConfig:
    if not path.exists():
        return TaskpilotConfig.default()
    return TaskpilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: TaskpilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
