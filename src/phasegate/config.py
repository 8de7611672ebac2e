from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from phasegate.errors import ConfigError

LedgerBackendName = Literal["local", "memory"]
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True)
class SchedulerConfig:
    lease_timeout_seconds: float = 30.0
    max_attempts: int = 3
    max_append_retries: int = 8
    sweep_interval_seconds: float = 5.0


@dataclass(slots=True)
class WorkerConfig:
    heartbeat_interval_seconds: float = 8.0
    backoff_initial_seconds: float = 0.5
    backoff_max_seconds: float = 30.0


@dataclass(slots=True)
class LedgerConfig:
    backend: LedgerBackendName = "local"
    path: str = ".phasegate/ledger.jsonl"
    archive_dir: str = ".phasegate/archive"
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class RecoveryConfig:
    auto_rollback: bool = False


@dataclass(slots=True)
class GraphConfig:
    path: str = "phasegate-graph.toml"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class PhasegateConfig:
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> PhasegateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PhasegateConfig:
        try:
            return cls(
                scheduler=SchedulerConfig(**data.get("scheduler", {})),
                worker=WorkerConfig(**data.get("worker", {})),
                ledger=LedgerConfig(**data.get("ledger", {})),
                recovery=RecoveryConfig(**data.get("recovery", {})),
                graph=GraphConfig(**data.get("graph", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "scheduler": {
                "lease_timeout_seconds": self.scheduler.lease_timeout_seconds,
                "max_attempts": self.scheduler.max_attempts,
                "max_append_retries": self.scheduler.max_append_retries,
                "sweep_interval_seconds": self.scheduler.sweep_interval_seconds,
            },
            "worker": {
                "heartbeat_interval_seconds": self.worker.heartbeat_interval_seconds,
                "backoff_initial_seconds": self.worker.backoff_initial_seconds,
                "backoff_max_seconds": self.worker.backoff_max_seconds,
            },
            "ledger": {
                "backend": self.ledger.backend,
                "path": self.ledger.path,
                "archive_dir": self.ledger.archive_dir,
                "lock_timeout_seconds": self.ledger.lock_timeout_seconds,
            },
            "recovery": {
                "auto_rollback": self.recovery.auto_rollback,
            },
            "graph": {
                "path": self.graph.path,
            },
            "logging": {
                "level": self.logging.level,
            },
        }

    def validate(self) -> None:
        problems: list[str] = []
        lease_timeout = float(self.scheduler.lease_timeout_seconds)
        if lease_timeout <= 0:
            problems.append("scheduler.lease_timeout_seconds must be positive.")
        if int(self.scheduler.max_attempts) < 1:
            problems.append("scheduler.max_attempts must be at least 1.")
        if int(self.scheduler.max_append_retries) < 1:
            problems.append("scheduler.max_append_retries must be at least 1.")
        if float(self.scheduler.sweep_interval_seconds) <= 0:
            problems.append("scheduler.sweep_interval_seconds must be positive.")
        heartbeat = float(self.worker.heartbeat_interval_seconds)
        # two missed beats must still fit inside one lease
        if heartbeat <= 0 or heartbeat >= lease_timeout / 3:
            problems.append(
                "worker.heartbeat_interval_seconds must be positive and below "
                "scheduler.lease_timeout_seconds / 3."
            )
        if float(self.worker.backoff_initial_seconds) <= 0:
            problems.append("worker.backoff_initial_seconds must be positive.")
        if float(self.worker.backoff_max_seconds) < float(self.worker.backoff_initial_seconds):
            problems.append("worker.backoff_max_seconds must be >= backoff_initial_seconds.")
        if self.ledger.backend not in {"local", "memory"}:
            problems.append(f"Unsupported ledger backend: {self.ledger.backend}")
        if str(self.logging.level).upper() not in LOG_LEVELS:
            problems.append(f"Unsupported logging level: {self.logging.level}")
        if problems:
            raise ConfigError("Invalid configuration:\n" + "\n".join(f"- {p}" for p in problems))


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PhasegateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["scheduler", "worker", "ledger", "recovery", "graph", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PhasegateConfig:
    if not path.exists():
        return PhasegateConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    config = PhasegateConfig.from_dict(data)
    config.validate()
    return config


def save_config(path: Path, config: PhasegateConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
