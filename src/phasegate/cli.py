from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from phasegate.config import PhasegateConfig, load_config, save_config
from phasegate.errors import PhasegateError
from phasegate.graph import TaskGraph, load_graph
from phasegate.ledger import CoordinationLedger, open_ledger
from phasegate.recovery import RecoveryManager
from phasegate.scheduler import Assignment, Scheduler, TaskResult

SAMPLE_GRAPH = """\
[[phases]]
id = "assessment"
order = 0
description = "Inventory the system before touching it."

[[phases]]
id = "safety-net"
order = 1
criteria = [{ name = "assessment-reviewed", expression = "assess-risks.reviewed == true" }]

[[phases]]
id = "transformation"
order = 2
criteria = [{ name = "coverage-gate", expression = "coverage >= 0.90" }]

[[phases]]
id = "validation"
order = 3

[[tasks]]
id = "assess-inventory"
phase = "assessment"

[[tasks]]
id = "assess-risks"
phase = "assessment"
depends_on = ["assess-inventory"]

[[tasks]]
id = "characterization-tests"
phase = "safety-net"
role = "tester"

[[tasks]]
id = "transform-modules"
phase = "transformation"
depends_on = ["characterization-tests"]

[[tasks]]
id = "validate-behaviour"
phase = "validation"
depends_on = ["transform-modules"]
"""


class _ClickHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record), err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def _configure_logging(level: str) -> None:
    package_logger = logging.getLogger("phasegate")
    package_logger.setLevel(level.upper())
    if not any(isinstance(handler, _ClickHandler) for handler in package_logger.handlers):
        handler = _ClickHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        package_logger.addHandler(handler)


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: PhasegateConfig
    graph: TaskGraph
    ledger: CoordinationLedger
    scheduler: Scheduler
    recovery: RecoveryManager


def _resolve_path(root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = root / path
    return path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    root = Path.cwd().resolve()
    config_path = _resolve_path(root, config_value)
    try:
        config = load_config(config_path)
        _configure_logging(config.logging.level)
        graph = load_graph(_resolve_path(root, config.graph.path))
        ledger = open_ledger(graph, config.ledger, root)
    except PhasegateError as exc:
        raise click.ClickException(str(exc)) from exc
    recovery = RecoveryManager(ledger, config.recovery)
    scheduler = Scheduler(ledger, config.scheduler, recovery=recovery)
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        graph=graph,
        ledger=ledger,
        scheduler=scheduler,
        recovery=recovery,
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _parse_assignments(values: tuple[str, ...]) -> dict[str, Any]:
    parsed: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected key=value, got {item!r}")
        try:
            parsed[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            parsed[key.strip()] = raw
    return parsed


config_option = click.option(
    "--config", "config_value", default="phasegate.toml", show_default=True
)


@click.group()
def cli() -> None:
    """Phase-gated task orchestrator."""


@cli.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite the sample graph.")
@config_option
def init_command(force: bool, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_path(root, config_value)
    try:
        config = load_config(config_path)
    except PhasegateError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    (root / ".phasegate").mkdir(parents=True, exist_ok=True)

    graph_path = _resolve_path(root, config.graph.path)
    if force or not graph_path.exists():
        graph_path.write_text(SAMPLE_GRAPH, encoding="utf-8")

    click.echo(f"Initialized phasegate in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Task graph: {graph_path}")
    click.echo(f"Ledger backend: {config.ledger.backend}")
    if config.recovery.auto_rollback:
        click.echo("Auto rollback: on (regressed phases roll back automatically)")
    else:
        click.echo(
            "Auto rollback: off (regressions are only reported; set "
            "recovery.auto_rollback = true to roll back automatically)"
        )


@cli.command("validate")
@config_option
def validate_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    click.echo(
        f"Task graph OK: {len(runtime.graph.phases)} phases, {len(runtime.graph.tasks)} tasks"
    )


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@config_option
def status_command(verbose: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    payload = runtime.scheduler.status()
    if not verbose:
        payload = {
            "sequence": payload["sequence"],
            "phases": [
                {
                    "id": phase["id"],
                    "status": phase["status"],
                    "unmet": [item["expression"] for item in phase["gate"]["unmet"]],
                }
                for phase in payload["phases"]
            ],
            "tasks": [
                {
                    "id": task["id"],
                    "status": task["status"],
                    "attempt": task["attempt"],
                    "lease_owner": task["lease_owner"],
                }
                for task in payload["tasks"]
            ],
            "terminal_failures": payload["terminal_failures"],
            "force_resolved": payload["force_resolved"],
        }
    _echo_json(payload)


@cli.command("claim")
@click.argument("worker_id")
@click.option("--task", "task_id", default=None, help="Claim a specific task.")
@click.option("--role", "roles", multiple=True, help="Roles this worker accepts.")
@config_option
def claim_command(
    worker_id: str, task_id: str | None, roles: tuple[str, ...], config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    try:
        if task_id:
            outcome = runtime.scheduler.claim(worker_id, task_id)
        else:
            outcome = runtime.scheduler.request_work(worker_id, set(roles) if roles else None)
    except PhasegateError as exc:
        raise click.ClickException(str(exc)) from exc
    if isinstance(outcome, Assignment):
        _echo_json({"assigned": True, **outcome.to_dict()})
        return
    _echo_json({"assigned": False, **outcome.to_dict()})


@cli.command("heartbeat")
@click.argument("worker_id")
@click.option("--task", "task_id", default=None)
@click.option("--token", "lease_token", type=int, default=None)
@config_option
def heartbeat_command(
    worker_id: str, task_id: str | None, lease_token: int | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    try:
        expiry = runtime.scheduler.heartbeat(worker_id, task_id=task_id, lease_token=lease_token)
    except PhasegateError as exc:
        raise click.ClickException(str(exc)) from exc
    if expiry is None:
        click.echo(f"Heartbeat recorded for {worker_id}")
    else:
        click.echo(f"Lease extended for {worker_id} until {expiry:.3f}")


@cli.command("complete")
@click.argument("worker_id")
@click.argument("task_id")
@click.option("--metric", "metrics", multiple=True, help="Emitted metric as key=value.")
@click.option("--payload", default=None, help="JSON result payload.")
@click.option("--token", "lease_token", type=int, default=None)
@config_option
def complete_command(
    worker_id: str,
    task_id: str,
    metrics: tuple[str, ...],
    payload: str | None,
    lease_token: int | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    try:
        result_payload = json.loads(payload) if payload else None
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"--payload is not valid JSON: {exc}") from exc
    result = TaskResult(payload=result_payload, metrics=_parse_assignments(metrics))
    try:
        sequence = runtime.scheduler.report_complete(
            worker_id, task_id, result, lease_token=lease_token
        )
    except PhasegateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Completed {task_id} (sequence {sequence})")


@cli.command("fail")
@click.argument("worker_id")
@click.argument("task_id")
@click.option("--error", "error", required=True)
@click.option("--token", "lease_token", type=int, default=None)
@config_option
def fail_command(
    worker_id: str, task_id: str, error: str, lease_token: int | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    try:
        next_attempt = runtime.scheduler.report_failed(
            worker_id, task_id, error, lease_token=lease_token
        )
    except PhasegateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Recorded failure of {task_id}; retry as attempt {next_attempt}")


@cli.command("sweep")
@config_option
def sweep_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    reclaimed = runtime.scheduler.sweep()
    if not reclaimed:
        click.echo("No expired leases.")
        return
    for task_id in reclaimed:
        click.echo(f"Reclaimed {task_id}")


@cli.command("metric")
@click.argument("assignments", nargs=-1, required=True)
@click.option("--source", default="external", show_default=True)
@config_option
def metric_command(assignments: tuple[str, ...], source: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        sequence = runtime.scheduler.record_metrics(_parse_assignments(assignments), source=source)
    except PhasegateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Recorded {len(assignments)} metric(s) (sequence {sequence})")


@cli.command("regressions")
@config_option
def regressions_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    regressions = runtime.recovery.detect_regressions()
    _echo_json(
        [
            {"phase_id": item.phase_id, "unmet": [result.to_dict() for result in item.unmet]}
            for item in regressions
        ]
    )


@cli.command("rollback")
@click.argument("phase_id")
@click.option("--reason", required=True)
@config_option
def rollback_command(phase_id: str, reason: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        record = runtime.recovery.rollback(phase_id, reason)
    except PhasegateError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(record.to_dict())


@cli.command("force-resolve")
@click.argument("task_id")
@click.option("--reason", required=True)
@config_option
def force_resolve_command(task_id: str, reason: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        sequence = runtime.scheduler.force_resolve(task_id, reason)
    except PhasegateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Force-resolved {task_id} as RolledBack (sequence {sequence})")


@cli.command("replay")
@click.option("--upto", type=int, default=None, help="Fold only events up to this sequence.")
@config_option
def replay_command(upto: int | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        state = runtime.ledger.replay_from(0) if upto is None else runtime.ledger.state_at(upto)
    except PhasegateError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(state.to_dict())


@cli.command("archive")
@config_option
def archive_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        archive_dir = _resolve_path(runtime.root, runtime.config.ledger.archive_dir)
        target = runtime.ledger.archive(archive_dir)
    except PhasegateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Archived ledger to {target}")
