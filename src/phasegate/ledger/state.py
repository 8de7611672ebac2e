"""Materialised ledger snapshot.

``LedgerState`` is derived only by folding events over the initial state of a
task graph. Phase status and task readiness are reconciled after every event,
so a snapshot at sequence N is the same no matter which process folded it.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from phasegate import gates
from phasegate.errors import LedgerError
from phasegate.ledger import events as ev

if TYPE_CHECKING:
    from phasegate.graph import TaskGraph


class PhaseStatus(StrEnum):
    LOCKED = "Locked"
    OPEN = "Open"
    COMPLETE = "Complete"


class TaskStatus(StrEnum):
    PENDING = "Pending"
    RUNNABLE = "Runnable"
    LEASED = "Leased"
    DONE = "Done"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


SATISFIED = {TaskStatus.DONE, TaskStatus.ROLLED_BACK}


@dataclass(slots=True)
class PhaseState:
    id: str
    order: int
    status: PhaseStatus = PhaseStatus.LOCKED
    admitted: bool = False
    opened_at: int | None = None
    completed_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order": self.order,
            "status": str(self.status),
            "admitted": self.admitted,
            "opened_at": self.opened_at,
            "completed_at": self.completed_at,
        }


@dataclass(slots=True)
class TaskState:
    id: str
    phase_id: str
    depends_on: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.PENDING
    lease_owner: str | None = None
    lease_expiry: float | None = None
    lease_token: int | None = None
    attempt: int = 1
    result: dict[str, Any] | None = None
    last_error: str | None = None
    resolution: str | None = None

    def clear_lease(self) -> None:
        self.lease_owner = None
        self.lease_expiry = None
        self.lease_token = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "phase_id": self.phase_id,
            "depends_on": list(self.depends_on),
            "status": str(self.status),
            "lease_owner": self.lease_owner,
            "lease_expiry": self.lease_expiry,
            "lease_token": self.lease_token,
            "attempt": self.attempt,
            "result": self.result,
            "last_error": self.last_error,
            "resolution": self.resolution,
        }


@dataclass(slots=True)
class WorkerState:
    id: str
    last_heartbeat_at: float = 0.0
    current_lease: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "last_heartbeat_at": self.last_heartbeat_at,
            "current_lease": self.current_lease,
        }


@dataclass(slots=True)
class LedgerState:
    sequence: int = 0
    phases: dict[str, PhaseState] = field(default_factory=dict)
    tasks: dict[str, TaskState] = field(default_factory=dict)
    workers: dict[str, WorkerState] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    phase_history: list[dict[str, Any]] = field(default_factory=list)
    rollbacks: list[dict[str, Any]] = field(default_factory=list)
    archives: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def initial(cls, graph: TaskGraph) -> LedgerState:
        state = cls(
            phases={
                phase.id: PhaseState(id=phase.id, order=phase.order)
                for phase in graph.ordered_phases()
            },
            tasks={
                task.id: TaskState(id=task.id, phase_id=task.phase_id, depends_on=task.depends_on)
                for task in graph.tasks
            },
        )
        reconcile(state, graph)
        return state

    def copy(self) -> LedgerState:
        return copy.deepcopy(self)

    def phase_tasks(self, phase_id: str) -> list[TaskState]:
        return sorted(
            (task for task in self.tasks.values() if task.phase_id == phase_id),
            key=lambda task: task.id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "phases": {key: value.to_dict() for key, value in self.phases.items()},
            "tasks": {key: value.to_dict() for key, value in sorted(self.tasks.items())},
            "workers": {key: value.to_dict() for key, value in sorted(self.workers.items())},
            "metrics": dict(sorted(self.metrics.items())),
            "phase_history": list(self.phase_history),
            "rollbacks": list(self.rollbacks),
            "archives": list(self.archives),
        }


def _worker(state: LedgerState, worker_id: str) -> WorkerState:
    worker = state.workers.get(worker_id)
    if worker is None:
        worker = WorkerState(id=worker_id)
        state.workers[worker_id] = worker
    return worker


def _task(state: LedgerState, event: ev.LedgerEvent) -> TaskState:
    task_id = str(event.payload.get("task_id", ""))
    task = state.tasks.get(task_id)
    if task is None:
        raise LedgerError(
            f"Event {event.sequence} ({event.type}) references unknown task {task_id!r}"
        )
    return task


def _release_worker(state: LedgerState, task: TaskState) -> None:
    if task.lease_owner is None:
        return
    worker = state.workers.get(task.lease_owner)
    if worker is not None and worker.current_lease == task.id:
        worker.current_lease = None


def _strip_task_metrics(state: LedgerState, task_id: str) -> None:
    prefix = f"{task_id}."
    for key in [key for key in state.metrics if key.startswith(prefix)]:
        del state.metrics[key]


def _retry_or_fail(task: TaskState, *, error: str, terminal: bool) -> None:
    task.clear_lease()
    task.last_error = error
    if terminal:
        task.status = TaskStatus.FAILED
    else:
        task.status = TaskStatus.PENDING
        task.attempt += 1


def _apply_rollback(state: LedgerState, graph: TaskGraph, event: ev.LedgerEvent) -> None:
    phase_id = str(event.payload.get("phase_id", ""))
    if phase_id not in state.phases:
        raise LedgerError(f"Rollback {event.sequence} references unknown phase {phase_id!r}")
    affected_phases: list[str] = []
    affected_tasks: list[str] = []
    for phase in graph.phases_from(phase_id):
        phase_state = state.phases[phase.id]
        affected_phases.append(phase.id)
        phase_state.status = PhaseStatus.LOCKED
        phase_state.admitted = False
        phase_state.opened_at = None
        phase_state.completed_at = None
        for task in state.phase_tasks(phase.id):
            if task.status not in {TaskStatus.PENDING, TaskStatus.RUNNABLE} or task.attempt != 1:
                affected_tasks.append(task.id)
            _release_worker(state, task)
            task.clear_lease()
            task.status = TaskStatus.PENDING
            task.attempt = 1
            task.result = None
            task.last_error = None
            task.resolution = None
            _strip_task_metrics(state, task.id)
    state.rollbacks.append(
        {
            "sequence": event.sequence,
            "at": event.at,
            "phase_id": phase_id,
            "reason": event.payload.get("reason", ""),
            "trigger": event.payload.get("trigger", "operator"),
            "affected_phases": affected_phases,
            "affected_tasks": affected_tasks,
        }
    )


def apply_event(state: LedgerState, event: ev.LedgerEvent, graph: TaskGraph) -> None:
    if event.sequence != state.sequence + 1:
        raise LedgerError(
            f"Out-of-order event: expected sequence {state.sequence + 1}, got {event.sequence}"
        )
    payload = event.payload

    if event.type == ev.TASK_LEASED:
        task = _task(state, event)
        worker_id = str(payload["worker_id"])
        _release_worker(state, task)
        task.status = TaskStatus.LEASED
        task.lease_owner = worker_id
        task.lease_expiry = float(payload["lease_expiry"])
        task.lease_token = event.sequence
        task.attempt = int(payload.get("attempt", task.attempt))
        worker = _worker(state, worker_id)
        worker.current_lease = task.id
        worker.last_heartbeat_at = event.at

    elif event.type == ev.LEASE_RENEWED:
        task = _task(state, event)
        worker = _worker(state, str(payload["worker_id"]))
        worker.last_heartbeat_at = event.at
        if task.status == TaskStatus.LEASED and task.lease_owner == worker.id:
            task.lease_expiry = float(payload["lease_expiry"])

    elif event.type == ev.WORKER_HEARTBEAT:
        _worker(state, str(payload["worker_id"])).last_heartbeat_at = event.at

    elif event.type == ev.TASK_COMPLETED:
        task = _task(state, event)
        _release_worker(state, task)
        task.clear_lease()
        task.status = TaskStatus.DONE
        metrics = dict(payload.get("metrics") or {})
        task.result = {"payload": payload.get("result"), "metrics": metrics}
        task.last_error = None
        for key, value in metrics.items():
            state.metrics[f"{task.id}.{key}"] = value

    elif event.type == ev.TASK_FAILED:
        task = _task(state, event)
        _release_worker(state, task)
        error = str(payload.get("error", ""))
        _retry_or_fail(task, error=error, terminal=bool(payload["terminal"]))

    elif event.type == ev.LEASE_EXPIRED:
        task = _task(state, event)
        _release_worker(state, task)
        _retry_or_fail(task, error="lease expired", terminal=bool(payload["terminal"]))

    elif event.type == ev.TASK_FORCE_RESOLVED:
        task = _task(state, event)
        task.status = TaskStatus.ROLLED_BACK
        task.resolution = str(payload.get("reason", ""))

    elif event.type == ev.METRICS_RECORDED:
        state.metrics.update(dict(payload.get("metrics") or {}))

    elif event.type == ev.ROLLBACK_ISSUED:
        _apply_rollback(state, graph, event)

    elif event.type == ev.RUN_ARCHIVED:
        state.archives.append({"sequence": event.sequence, "at": event.at, "path": payload["path"]})

    else:
        raise LedgerError(f"Unknown ledger event type: {event.type}")

    state.sequence = event.sequence
    reconcile(state, graph)


def _record_transition(state: LedgerState, kind: str, phase_id: str) -> None:
    state.phase_history.append({"event": kind, "phase_id": phase_id, "sequence": state.sequence})


def _predecessor_complete(state: LedgerState, order: int) -> bool:
    for phase_state in state.phases.values():
        if phase_state.order == order - 1:
            return phase_state.status == PhaseStatus.COMPLETE
    return True


def reconcile(state: LedgerState, graph: TaskGraph) -> None:
    """Derive phase status and task readiness from the current facts."""
    for phase in graph.ordered_phases():
        phase_state = state.phases[phase.id]
        tasks = state.phase_tasks(phase.id)
        all_done = all(task.status in SATISFIED for task in tasks)

        if phase_state.status == PhaseStatus.COMPLETE:
            # completion survives criterion regressions; recovery handles those
            if all_done and _predecessor_complete(state, phase.order):
                continue
            phase_state.status = PhaseStatus.LOCKED
            phase_state.completed_at = None
            _record_transition(state, "PhaseLocked", phase.id)

        decision = gates.evaluate(phase, state)
        if decision.admitted:
            if phase_state.status == PhaseStatus.LOCKED:
                phase_state.status = PhaseStatus.OPEN
                phase_state.admitted = True
                phase_state.opened_at = state.sequence
                _record_transition(state, "PhaseOpened", phase.id)
            if all_done:
                phase_state.status = PhaseStatus.COMPLETE
                phase_state.completed_at = state.sequence
                _record_transition(state, "PhaseCompleted", phase.id)
        elif phase_state.status == PhaseStatus.OPEN:
            phase_state.status = PhaseStatus.LOCKED
            _record_transition(state, "PhaseLocked", phase.id)

    for task in state.tasks.values():
        if task.status not in {TaskStatus.PENDING, TaskStatus.RUNNABLE}:
            continue
        ready = state.phases[task.phase_id].status == PhaseStatus.OPEN and all(
            state.tasks[dep].status in SATISFIED for dep in task.depends_on
        )
        task.status = TaskStatus.RUNNABLE if ready else TaskStatus.PENDING


def fold(
    graph: TaskGraph,
    events: Iterable[ev.LedgerEvent],
    base: LedgerState | None = None,
) -> LedgerState:
    state = LedgerState.initial(graph) if base is None else base.copy()
    for event in events:
        apply_event(state, event, graph)
    return state
