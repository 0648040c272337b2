from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

BackendName = Literal["codex", "claude"]

SECTION_ORDER = ("backend", "agents", "flow", "executor", "runner", "snapshots")


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class AgentsConfig:
    planner_model: str = "claude-sonnet-4-5"
    safety_model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class FlowConfig:
    auto_approve: bool = False
    dry_run: bool = False
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    plan_approval_timeout_seconds: float = 300.0
    long_running_threshold_seconds: float = 60.0
    max_parallel_tasks: int = 1


@dataclass(slots=True)
class ExecutorConfig:
    safe_mode: bool = False
    step_approval_timeout_seconds: float = 30.0
    analyze_intent_with_llm: bool = True
    working_directory: str = "."


@dataclass(slots=True)
class RunnerConfig:
    timeout_seconds: float = 60.0
    kill_grace_seconds: float = 5.0
    readiness_delay_seconds: float = 2.0
    output_buffer_lines: int = 500


@dataclass(slots=True)
class SnapshotConfig:
    directory: str = ".autopilot/snapshots"
    persist: bool = True


@dataclass(slots=True)
class AutopilotConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    flow: FlowConfig = field(default_factory=FlowConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    snapshots: SnapshotConfig = field(default_factory=SnapshotConfig)

    @classmethod
    def default(cls) -> AutopilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AutopilotConfig:
        return cls(
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            flow=FlowConfig(**data.get("flow", {})),
            executor=ExecutorConfig(**data.get("executor", {})),
            runner=RunnerConfig(**data.get("runner", {})),
            snapshots=SnapshotConfig(**data.get("snapshots", {})),
        )

    def to_dict(self) -> dict[str, dict[str, Any]]:
        data: dict[str, dict[str, Any]] = {}
        for section in SECTION_ORDER:
            values = getattr(self, section)
            data[section] = {item.name: getattr(values, item.name) for item in fields(values)}
        return data


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


def dumps_toml(config: AutopilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AutopilotConfig:
    if not path.exists():
        return AutopilotConfig.default()
    return AutopilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: AutopilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
