from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

ProviderName = Literal["claude", "codex"]

CONFIG_DIR = ".convoy"
CONFIG_FILE = "config.toml"
_GITIGNORE = "*\n"

DEFAULT_MODELS: dict[str, str] = {
    "claude": "claude-sonnet-4-5",
    "codex": "gpt-5-codex",
}


class ConfigError(ValueError):
    """Raised when the project configuration cannot be used."""


@dataclass(slots=True)
class AIConfig:
    provider: ProviderName = "claude"
    model: str = DEFAULT_MODELS["claude"]


@dataclass(slots=True)
class BackendConfig:
    fallback: ProviderName = "claude"
    max_retries: int = 0
    retry_backoff_seconds: float = 5.0
    timeout_seconds: float = 3600.0


@dataclass(slots=True)
class AgentConfig:
    base_branch: str = "main"
    max_parallel: int = 3
    auto_label: bool = True
    auto_pr: bool = True
    rebase_before_task: bool = True


@dataclass(slots=True)
class SprintConfig:
    active: str = ""
    stop_on_failure: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass(slots=True)
class ConvoyConfig:
    ai: AIConfig
    backend: BackendConfig
    agent: AgentConfig
    sprint: SprintConfig
    logging: LoggingConfig

    @classmethod
    def default(cls) -> ConvoyConfig:
        return cls(
            ai=AIConfig(),
            backend=BackendConfig(),
            agent=AgentConfig(),
            sprint=SprintConfig(),
            logging=LoggingConfig(),
        )

    @classmethod
    def from_dict(cls, data: dict) -> ConvoyConfig:
        try:
            config = cls(
                ai=AIConfig(**data.get("ai", {})),
                backend=BackendConfig(**data.get("backend", {})),
                agent=AgentConfig(**data.get("agent", {})),
                sprint=SprintConfig(**data.get("sprint", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.ai.provider not in DEFAULT_MODELS:
            raise ConfigError(f"Unsupported AI provider: {self.ai.provider}")
        if self.backend.fallback not in DEFAULT_MODELS:
            raise ConfigError(f"Unsupported fallback provider: {self.backend.fallback}")
        if int(self.agent.max_parallel) < 1:
            raise ConfigError("agent.max_parallel must be at least 1.")
        if not self.agent.base_branch.strip():
            raise ConfigError("agent.base_branch must not be empty.")

    def to_dict(self) -> dict:
        return {
            "ai": {
                "provider": self.ai.provider,
                "model": self.ai.model,
            },
            "backend": {
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agent": {
                "base_branch": self.agent.base_branch,
                "max_parallel": self.agent.max_parallel,
                "auto_label": self.agent.auto_label,
                "auto_pr": self.agent.auto_pr,
                "rebase_before_task": self.agent.rebase_before_task,
            },
            "sprint": {
                "active": self.sprint.active,
                "stop_on_failure": self.sprint.stop_on_failure,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConvoyConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["ai", "backend", "agent", "sprint", "logging"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def config_path_for(project_root: Path) -> Path:
    return project_root / CONFIG_DIR / CONFIG_FILE


def ensure_project_dir(project_root: Path) -> Path:
    """Create `.convoy/` with an ignore file so run artefacts never reach a commit."""
    directory = project_root / CONFIG_DIR
    directory.mkdir(parents=True, exist_ok=True)
    ignore_file = directory / ".gitignore"
    if not ignore_file.exists():
        ignore_file.write_text(_GITIGNORE, encoding="utf-8")
    return directory


def load_config(path: Path) -> ConvoyConfig:
    if not path.exists():
        return ConvoyConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse config at {path}: {exc}") from exc
    return ConvoyConfig.from_dict(data)


def save_config(path: Path, config: ConvoyConfig) -> None:
    if path.parent.name == CONFIG_DIR:
        ensure_project_dir(path.parent.parent)
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
