from __future__ import annotations

import json
import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_TIMEOUT_MS = 300_000
DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1_000
DEFAULT_POLL_INTERVAL_MS = 500
DEFAULT_CLEANUP_MAX_AGE_MS = 3_600_000


@dataclass(slots=True)
class DispatchConfig:
    launcher: str = "scripts/launch-worker.sh"
    shell: str = "bash"
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retries: int = DEFAULT_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    output_dir: str = ""
    debug: bool = False
    cleanup_max_age_ms: int = DEFAULT_CLEANUP_MAX_AGE_MS

    def resolved_output_dir(self) -> Path:
        if self.output_dir:
            return Path(self.output_dir)
        return Path(tempfile.gettempdir())


@dataclass(slots=True)
class GateConfig:
    required_checks: list[str] = field(default_factory=lambda: ["has_output"])
    advisory_checks: list[str] = field(default_factory=list)
    failure_threshold: int = -1
    allow_waivers: bool = True
    weights: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class RecoveryConfig:
    max_attempts: int = 3


@dataclass(slots=True)
class NotifierConfig:
    enabled: bool = True
    events_file: str = ".foreman/events.jsonl"
    status_file: str = ".foreman/status.json"
    queue_size: int = 1024


@dataclass(slots=True)
class StateConfig:
    state_dir: str = ".foreman/state"


@dataclass(slots=True)
class StageConfig:
    name: str
    worker: str
    task: str
    params: str = ""
    instructions: str = ""
    critical: bool = False
    skippable: bool = False
    required_checks: list[str] = field(default_factory=list)


def _default_stages() -> list[StageConfig]:
    return [
        StageConfig(
            name="spec",
            worker="pm",
            task="spec-pipeline",
            instructions="Turn the story into an implementation plan with acceptance criteria.",
            critical=True,
        ),
        StageConfig(
            name="develop",
            worker="auto",
            task="develop",
            instructions="Implement the story against its acceptance criteria.",
            critical=True,
            required_checks=["has_output", "tests_pass"],
        ),
        StageConfig(
            name="qa",
            worker="qa",
            task="review",
            instructions="Review the implementation and report findings by severity.",
            required_checks=["has_output", "no_blockers"],
        ),
        StageConfig(
            name="docs",
            worker="dev",
            task="document",
            instructions="Update documentation affected by the change.",
            skippable=True,
        ),
    ]


@dataclass(slots=True)
class ForemanConfig:
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    gates: GateConfig = field(default_factory=GateConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    state: StateConfig = field(default_factory=StateConfig)
    stages: list[StageConfig] = field(default_factory=_default_stages)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        stages_data = data.get("stages")
        stages = (
            [StageConfig(**item) for item in stages_data]
            if isinstance(stages_data, list)
            else _default_stages()
        )
        return cls(
            dispatch=DispatchConfig(**data.get("dispatch", {})),
            gates=GateConfig(**data.get("gates", {})),
            recovery=RecoveryConfig(**data.get("recovery", {})),
            notifier=NotifierConfig(**data.get("notifier", {})),
            state=StateConfig(**data.get("state", {})),
            stages=stages,
        )

    def to_dict(self) -> dict:
        return {
            "dispatch": {
                "launcher": self.dispatch.launcher,
                "shell": self.dispatch.shell,
                "timeout_ms": self.dispatch.timeout_ms,
                "retries": self.dispatch.retries,
                "retry_delay_ms": self.dispatch.retry_delay_ms,
                "poll_interval_ms": self.dispatch.poll_interval_ms,
                "output_dir": self.dispatch.output_dir,
                "debug": self.dispatch.debug,
                "cleanup_max_age_ms": self.dispatch.cleanup_max_age_ms,
            },
            "gates": {
                "required_checks": list(self.gates.required_checks),
                "advisory_checks": list(self.gates.advisory_checks),
                "failure_threshold": self.gates.failure_threshold,
                "allow_waivers": self.gates.allow_waivers,
                "weights": dict(self.gates.weights),
            },
            "recovery": {
                "max_attempts": self.recovery.max_attempts,
            },
            "notifier": {
                "enabled": self.notifier.enabled,
                "events_file": self.notifier.events_file,
                "status_file": self.notifier.status_file,
                "queue_size": self.notifier.queue_size,
            },
            "state": {
                "state_dir": self.state.state_dir,
            },
            "stages": [
                {
                    "name": stage.name,
                    "worker": stage.worker,
                    "task": stage.task,
                    "params": stage.params,
                    "instructions": stage.instructions,
                    "critical": stage.critical,
                    "skippable": stage.skippable,
                    "required_checks": list(stage.required_checks),
                }
                for stage in self.stages
            ],
        }


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(
            f"{json.dumps(str(key))} = {_toml_value(item)}" for key, item in value.items()
        )
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["dispatch", "gates", "recovery", "notifier", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for stage in data["stages"]:
        lines.append("[[stages]]")
        for key, value in stage.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
