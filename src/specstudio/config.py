from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from specstudio.errors import ConfigError
from specstudio.process import DEFAULT_MAX_OUTPUT_BYTES

BackendName = Literal["claude", "codex"]
FailurePolicy = Literal["fail_open", "fail_closed"]

BACKEND_NAMES: tuple[str, ...] = ("claude", "codex")
FAILURE_POLICIES: tuple[str, ...] = ("fail_open", "fail_closed")
CONFIG_FILENAME = "specstudio.toml"


@dataclass(slots=True)
class AgentConfig:
    backend: BackendName = "claude"
    binary: str = ""
    model: str = ""
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReviewerConfig:
    backend: BackendName = "claude"
    fallback: BackendName = "claude"
    binary: str = ""
    model: str = ""
    timeout_seconds: float = 0.0
    max_retries: int = 0
    retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class SupervisorConfig:
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES


@dataclass(slots=True)
class QualityGateConfig:
    failure_policy: FailurePolicy = "fail_open"
    include_untracked: bool = True
    max_diff_chars: int = 200_000


@dataclass(slots=True)
class WorkspaceConfig:
    plan_file: str = ".specstudio/plan.json"


@dataclass(slots=True)
class SpecStudioConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    reviewer: ReviewerConfig = field(default_factory=ReviewerConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    quality_gate: QualityGateConfig = field(default_factory=QualityGateConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)

    @classmethod
    def default(cls) -> SpecStudioConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SpecStudioConfig:
        try:
            config = cls(
                agent=AgentConfig(**data.get("agent", {})),
                reviewer=ReviewerConfig(**data.get("reviewer", {})),
                supervisor=SupervisorConfig(**data.get("supervisor", {})),
                quality_gate=QualityGateConfig(**data.get("quality_gate", {})),
                workspace=WorkspaceConfig(**data.get("workspace", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        for label, value in (
            ("agent.backend", self.agent.backend),
            ("reviewer.backend", self.reviewer.backend),
            ("reviewer.fallback", self.reviewer.fallback),
        ):
            if value not in BACKEND_NAMES:
                raise ConfigError(f"{label} must be one of {', '.join(BACKEND_NAMES)}: {value!r}")
        if self.quality_gate.failure_policy not in FAILURE_POLICIES:
            raise ConfigError(
                "quality_gate.failure_policy must be one of "
                f"{', '.join(FAILURE_POLICIES)}: {self.quality_gate.failure_policy!r}"
            )
        self.supervisor.max_output_bytes = _number(
            "supervisor.max_output_bytes", self.supervisor.max_output_bytes, int
        )
        self.quality_gate.max_diff_chars = _number(
            "quality_gate.max_diff_chars", self.quality_gate.max_diff_chars, int
        )
        self.reviewer.max_retries = _number("reviewer.max_retries", self.reviewer.max_retries, int)
        self.reviewer.timeout_seconds = _number(
            "reviewer.timeout_seconds", self.reviewer.timeout_seconds, float
        )
        self.reviewer.retry_backoff_seconds = _number(
            "reviewer.retry_backoff_seconds", self.reviewer.retry_backoff_seconds, float
        )
        if self.supervisor.max_output_bytes <= 0:
            raise ConfigError("supervisor.max_output_bytes must be positive.")
        if self.quality_gate.max_diff_chars <= 0:
            raise ConfigError("quality_gate.max_diff_chars must be positive.")
        if self.reviewer.max_retries < 0:
            raise ConfigError("reviewer.max_retries must not be negative.")
        if self.reviewer.timeout_seconds < 0:
            raise ConfigError("reviewer.timeout_seconds must not be negative.")
        if self.reviewer.retry_backoff_seconds < 0:
            raise ConfigError("reviewer.retry_backoff_seconds must not be negative.")
        if not isinstance(self.agent.extra_args, list):
            raise ConfigError("agent.extra_args must be a list of strings.")

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {
            "agent": {
                "backend": self.agent.backend,
                "binary": self.agent.binary,
                "model": self.agent.model,
                "extra_args": list(self.agent.extra_args),
            },
            "reviewer": {
                "backend": self.reviewer.backend,
                "fallback": self.reviewer.fallback,
                "binary": self.reviewer.binary,
                "model": self.reviewer.model,
                "timeout_seconds": self.reviewer.timeout_seconds,
                "max_retries": self.reviewer.max_retries,
                "retry_backoff_seconds": self.reviewer.retry_backoff_seconds,
            },
            "supervisor": {
                "max_output_bytes": self.supervisor.max_output_bytes,
            },
            "quality_gate": {
                "failure_policy": self.quality_gate.failure_policy,
                "include_untracked": self.quality_gate.include_untracked,
                "max_diff_chars": self.quality_gate.max_diff_chars,
            },
            "workspace": {
                "plan_file": self.workspace.plan_file,
            },
        }

    def plan_path(self, workspace_root: Path) -> Path:
        path = Path(self.workspace.plan_file)
        if not path.is_absolute():
            path = workspace_root / path
        return path


def _number(label: str, value: object, kind: type[Any]) -> Any:
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be a number: {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be a number: {value!r}") from exc


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SpecStudioConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["agent", "reviewer", "supervisor", "quality_gate", "workspace"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SpecStudioConfig:
    if not path.exists():
        return SpecStudioConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return SpecStudioConfig.from_dict(data)


def save_config(path: Path, config: SpecStudioConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
