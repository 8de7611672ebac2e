from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from phasegate import gates
from phasegate.config import SchedulerConfig
from phasegate.errors import (
    GateDeniedError,
    LeaseExpiredError,
    SchedulerError,
    StaleWriteError,
    TerminalFailureError,
)
from phasegate.ledger import events as ev
from phasegate.ledger.state import LedgerState, PhaseStatus, TaskState, TaskStatus
from phasegate.ledger.store import CoordinationLedger

if TYPE_CHECKING:
    from phasegate.recovery import RecoveryManager

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True, frozen=True)
class Assignment:
    task_id: str
    phase_id: str
    worker_id: str
    attempt: int
    lease_token: int
    lease_expiry: float
    role: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "phase_id": self.phase_id,
            "worker_id": self.worker_id,
            "attempt": self.attempt,
            "lease_token": self.lease_token,
            "lease_expiry": self.lease_expiry,
            "role": self.role,
        }


@dataclass(slots=True, frozen=True)
class NoWorkAvailable:
    reason: str
    blocked: tuple[gates.GateDecision, ...] = ()
    failed_tasks: tuple[str, ...] = ()
    sequence: int = 0

    def __bool__(self) -> bool:
        return False

    def reasons(self) -> list[str]:
        lines = [f"{item.phase_id}: {reason}" for item in self.blocked for reason in item.reasons()]
        lines.extend(f"task {task_id} failed terminally" for task_id in self.failed_tasks)
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "sequence": self.sequence,
            "blocked": [item.to_dict() for item in self.blocked],
            "failed_tasks": list(self.failed_tasks),
        }


@dataclass(slots=True)
class TaskResult:
    payload: Any = None
    metrics: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: TaskResult | Mapping[str, Any] | None) -> TaskResult:
        if value is None:
            return cls()
        if isinstance(value, TaskResult):
            return value
        return cls(payload=value.get("payload"), metrics=dict(value.get("metrics") or {}))


class Scheduler:
    """Leases runnable tasks to workers through the coordination ledger.

    Every decision is taken against one fresh snapshot and committed with a
    conditional append; losing a race means re-reading and deciding again.
    """

    def __init__(
        self,
        ledger: CoordinationLedger,
        config: SchedulerConfig | None = None,
        *,
        clock: Clock = time.time,
        recovery: RecoveryManager | None = None,
    ) -> None:
        self.ledger = ledger
        self.graph = ledger.graph
        self.config = config or SchedulerConfig()
        self.clock = clock
        self.recovery = recovery

    @property
    def lease_timeout(self) -> float:
        return float(self.config.lease_timeout_seconds)

    @property
    def max_attempts(self) -> int:
        return max(1, int(self.config.max_attempts))

    def _attempts(self) -> range:
        return range(max(1, int(self.config.max_append_retries)))

    def _contention_error(self, action: str) -> SchedulerError:
        return SchedulerError(
            f"Could not commit {action} after {self.config.max_append_retries} attempts "
            "due to concurrent ledger writes."
        )

    def _task_state(self, snapshot: LedgerState, task_id: str) -> TaskState:
        task = snapshot.tasks.get(task_id)
        if task is None:
            raise SchedulerError(f"Unknown task: {task_id}")
        return task

    @staticmethod
    def _expired_leases(snapshot: LedgerState, now: float) -> list[TaskState]:
        return sorted(
            (
                task
                for task in snapshot.tasks.values()
                if task.status == TaskStatus.LEASED
                and task.lease_expiry is not None
                and task.lease_expiry <= now
            ),
            key=lambda task: task.id,
        )

    def _assignment(self, task: TaskState) -> Assignment:
        assert task.lease_owner is not None
        assert task.lease_token is not None and task.lease_expiry is not None
        return Assignment(
            task_id=task.id,
            phase_id=task.phase_id,
            worker_id=task.lease_owner,
            attempt=task.attempt,
            lease_token=task.lease_token,
            lease_expiry=task.lease_expiry,
            role=self.graph.task(task.id).role,
        )

    def _live_lease(self, snapshot: LedgerState, worker_id: str, now: float) -> TaskState | None:
        worker = snapshot.workers.get(worker_id)
        if worker is None or worker.current_lease is None:
            return None
        task = snapshot.tasks.get(worker.current_lease)
        if (
            task is not None
            and task.status == TaskStatus.LEASED
            and task.lease_owner == worker_id
            and task.lease_expiry is not None
            and task.lease_expiry > now
        ):
            return task
        return None

    def _accepts(self, task_id: str, roles: Collection[str] | None) -> bool:
        if roles is None:
            return True
        role = self.graph.task(task_id).role
        return role is None or role in roles

    def _no_work(self, snapshot: LedgerState) -> NoWorkAvailable:
        blocked: list[gates.GateDecision] = []
        for phase in self.graph.ordered_phases():
            if snapshot.phases[phase.id].status == PhaseStatus.LOCKED:
                decision = gates.evaluate(phase, snapshot)
                if not decision.admitted:
                    blocked.append(decision)
        failed = tuple(
            task.id for task in sorted(snapshot.tasks.values(), key=lambda item: item.id)
            if task.status == TaskStatus.FAILED
        )
        if all(state.status == PhaseStatus.COMPLETE for state in snapshot.phases.values()):
            reason = "all phases complete"
        elif failed:
            reason = "terminal task failures block progress"
        elif blocked and not any(
            state.status == PhaseStatus.OPEN for state in snapshot.phases.values()
        ):
            reason = "phase gates are not satisfied"
        else:
            reason = "waiting on leased tasks or dependencies"
        return NoWorkAvailable(
            reason=reason, blocked=tuple(blocked), failed_tasks=failed, sequence=snapshot.sequence
        )

    def _expire(self, snapshot: LedgerState, task: TaskState, now: float) -> None:
        terminal = task.attempt >= self.max_attempts
        self.ledger.append(
            ev.lease_expired(task.id, task.lease_owner, at=now, terminal=terminal),
            expected_sequence=snapshot.sequence,
        )
        if terminal:
            logger.error(
                "task %s lease held by %s expired on final attempt %s; task failed",
                task.id, task.lease_owner, task.attempt,
            )
        else:
            logger.warning(
                "reclaimed task %s from %s (attempt %s expired)",
                task.id, task.lease_owner, task.attempt,
            )

    def request_work(
        self, worker_id: str, roles: Collection[str] | None = None
    ) -> Assignment | NoWorkAvailable:
        for _ in self._attempts():
            now = self.clock()
            # reclaiming is bounded by the task count, not the append retries
            self.sweep(now)
            snapshot = self.ledger.snapshot()
            if self._expired_leases(snapshot, now):
                continue

            held = self._live_lease(snapshot, worker_id, now)
            if held is not None:
                return self._assignment(held)

            candidates = [
                task_id
                for task_id in self.graph.runnable_tasks(snapshot, now)
                if self._accepts(task_id, roles)
            ]
            if not candidates:
                return self._no_work(snapshot)

            task = snapshot.tasks[candidates[0]]
            expiry = now + self.lease_timeout
            try:
                token = self.ledger.append(
                    ev.task_leased(
                        task.id, worker_id, at=now, lease_expiry=expiry, attempt=task.attempt
                    ),
                    expected_sequence=snapshot.sequence,
                )
            except StaleWriteError:
                continue
            logger.info("leased task %s to %s (attempt %s)", task.id, worker_id, task.attempt)
            return Assignment(
                task_id=task.id,
                phase_id=task.phase_id,
                worker_id=worker_id,
                attempt=task.attempt,
                lease_token=token,
                lease_expiry=expiry,
                role=self.graph.task(task.id).role,
            )
        raise self._contention_error("a lease")

    def claim(self, worker_id: str, task_id: str) -> Assignment:
        """Lease one specific task, or explain why its phase is not admitted."""
        for _ in self._attempts():
            now = self.clock()
            snapshot = self.ledger.snapshot()
            task = self._task_state(snapshot, task_id)
            phase_state = snapshot.phases[task.phase_id]
            if phase_state.status == PhaseStatus.LOCKED:
                decision = gates.evaluate(self.graph.phase(task.phase_id), snapshot)
                raise GateDeniedError(task.phase_id, list(decision.unmet))

            held = self._live_lease(snapshot, worker_id, now)
            if held is not None:
                if held.id == task_id:
                    return self._assignment(held)
                raise SchedulerError(f"Worker {worker_id} already holds task {held.id}.")

            expired = task.status == TaskStatus.LEASED and (task.lease_expiry or 0.0) <= now
            if expired:
                try:
                    self._expire(snapshot, task, now)
                except StaleWriteError:
                    pass
                continue
            if task_id not in self.graph.runnable_tasks(snapshot, now):
                raise SchedulerError(f"Task {task_id} is not runnable (status {task.status}).")

            expiry = now + self.lease_timeout
            try:
                token = self.ledger.append(
                    ev.task_leased(
                        task_id, worker_id, at=now, lease_expiry=expiry, attempt=task.attempt
                    ),
                    expected_sequence=snapshot.sequence,
                )
            except StaleWriteError:
                continue
            logger.info("leased task %s to %s by claim", task_id, worker_id)
            return Assignment(
                task_id=task_id,
                phase_id=task.phase_id,
                worker_id=worker_id,
                attempt=task.attempt,
                lease_token=token,
                lease_expiry=expiry,
                role=self.graph.task(task_id).role,
            )
        raise self._contention_error("a claim")

    def _validate_lease(
        self,
        snapshot: LedgerState,
        worker_id: str,
        task_id: str,
        lease_token: int | None,
        now: float,
    ) -> TaskState:
        task = self._task_state(snapshot, task_id)
        if task.status != TaskStatus.LEASED or task.lease_owner != worker_id:
            raise LeaseExpiredError(task_id, worker_id, f"Task status is {task.status}.")
        if lease_token is not None and task.lease_token != lease_token:
            raise LeaseExpiredError(
                task_id,
                worker_id,
                f"Lease token {lease_token} was superseded by {task.lease_token}.",
            )
        if task.lease_expiry is None or task.lease_expiry <= now:
            raise LeaseExpiredError(task_id, worker_id, "Lease expired before the report arrived.")
        return task

    def heartbeat(
        self,
        worker_id: str,
        task_id: str | None = None,
        lease_token: int | None = None,
    ) -> float | None:
        """Record liveness; returns the extended lease expiry when a lease is held.

        Passing ``task_id`` asserts that lease is still held and raises
        ``LeaseExpiredError`` when it is not.
        """
        for _ in self._attempts():
            now = self.clock()
            snapshot = self.ledger.snapshot()
            if task_id is None:
                worker = snapshot.workers.get(worker_id)
                held = worker.current_lease if worker is not None else None
            else:
                held = task_id
            if held is None:
                self.ledger.append(ev.worker_heartbeat(worker_id, at=now))
                return None
            task_id_to_renew = held
            self._validate_lease(snapshot, worker_id, task_id_to_renew, lease_token, now)
            expiry = now + self.lease_timeout
            try:
                self.ledger.append(
                    ev.lease_renewed(task_id_to_renew, worker_id, at=now, lease_expiry=expiry),
                    expected_sequence=snapshot.sequence,
                )
            except StaleWriteError:
                continue
            return expiry
        raise self._contention_error("a heartbeat")

    def report_complete(
        self,
        worker_id: str,
        task_id: str,
        result: TaskResult | Mapping[str, Any] | None = None,
        lease_token: int | None = None,
    ) -> int:
        outcome = TaskResult.coerce(result)
        for _ in self._attempts():
            now = self.clock()
            snapshot = self.ledger.snapshot()
            self._validate_lease(snapshot, worker_id, task_id, lease_token, now)
            try:
                sequence = self.ledger.append(
                    ev.task_completed(
                        task_id, worker_id, at=now, payload=outcome.payload, metrics=outcome.metrics
                    ),
                    expected_sequence=snapshot.sequence,
                )
            except StaleWriteError:
                continue
            logger.info("task %s completed by %s", task_id, worker_id)
            self._after_transition()
            return sequence
        raise self._contention_error("a completion")

    def report_failed(
        self,
        worker_id: str,
        task_id: str,
        error: str,
        lease_token: int | None = None,
    ) -> int:
        """Record a failed attempt and return the next attempt number.

        Raises ``TerminalFailureError`` once ``max_attempts`` is exhausted; the
        failure is already recorded when that happens.
        """
        for _ in self._attempts():
            now = self.clock()
            snapshot = self.ledger.snapshot()
            task = self._validate_lease(snapshot, worker_id, task_id, lease_token, now)
            terminal = task.attempt >= self.max_attempts
            try:
                self.ledger.append(
                    ev.task_failed(task_id, worker_id, at=now, error=error, terminal=terminal),
                    expected_sequence=snapshot.sequence,
                )
            except StaleWriteError:
                continue
            if terminal:
                logger.error(
                    "task %s failed terminally on attempt %s: %s", task_id, task.attempt, error
                )
                raise TerminalFailureError(task_id, error, task.attempt)
            logger.warning("task %s attempt %s failed: %s", task_id, task.attempt, error)
            return task.attempt + 1
        raise self._contention_error("a failure report")

    def record_metrics(self, metrics: Mapping[str, Any], source: str = "external") -> int:
        if not metrics:
            raise SchedulerError("No metrics given.")
        sequence = self.ledger.append(
            ev.metrics_recorded(dict(metrics), at=self.clock(), source=source)
        )
        logger.info("recorded metrics %s from %s", sorted(metrics), source)
        self._after_transition()
        return sequence

    def force_resolve(self, task_id: str, reason: str, actor: str = "operator") -> int:
        for _ in self._attempts():
            snapshot = self.ledger.snapshot()
            task = self._task_state(snapshot, task_id)
            if task.status != TaskStatus.FAILED:
                raise SchedulerError(
                    "Only terminally failed tasks can be force-resolved; "
                    f"{task_id} is {task.status}."
                )
            try:
                sequence = self.ledger.append(
                    ev.task_force_resolved(task_id, at=self.clock(), reason=reason, actor=actor),
                    expected_sequence=snapshot.sequence,
                )
            except StaleWriteError:
                continue
            logger.warning("task %s force-resolved by %s: %s", task_id, actor, reason)
            return sequence
        raise self._contention_error("a force-resolve")

    def sweep(self, now: float | None = None) -> list[str]:
        """Reclaim every lease whose expiry has passed."""
        reclaimed: list[str] = []
        for _ in range(len(self.graph.tasks) + int(self.config.max_append_retries)):
            current = self.clock() if now is None else now
            snapshot = self.ledger.snapshot()
            expired = [
                task for task in self._expired_leases(snapshot, current) if task.id not in reclaimed
            ]
            if not expired:
                break
            try:
                self._expire(snapshot, expired[0], current)
            except StaleWriteError:
                continue
            reclaimed.append(expired[0].id)
        return reclaimed

    async def run_sweeper(
        self, stop: asyncio.Event, interval_seconds: float | None = None
    ) -> None:
        interval = float(interval_seconds or self.config.sweep_interval_seconds)
        while not stop.is_set():
            self.sweep()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                continue

    def _after_transition(self) -> None:
        if self.recovery is not None:
            self.recovery.check()

    def status(self, now: float | None = None) -> dict[str, Any]:
        current = self.clock() if now is None else now
        snapshot = self.ledger.snapshot()
        decisions = gates.evaluate_all(self.graph, snapshot)
        phases = []
        for phase in self.graph.ordered_phases():
            state = snapshot.phases[phase.id]
            phases.append(
                {
                    **state.to_dict(),
                    "gate": decisions[phase.id].to_dict(),
                    "tasks": [task.id for task in snapshot.phase_tasks(phase.id)],
                }
            )
        workers = []
        for worker in sorted(snapshot.workers.values(), key=lambda item: item.id):
            payload = worker.to_dict()
            payload["alive"] = current - worker.last_heartbeat_at < self.lease_timeout
            workers.append(payload)
        tasks = [task.to_dict() for task in sorted(snapshot.tasks.values(), key=lambda t: t.id)]
        return {
            "sequence": snapshot.sequence,
            "phases": phases,
            "tasks": tasks,
            "workers": workers,
            "metrics": dict(sorted(snapshot.metrics.items())),
            "terminal_failures": [
                {
                    "task_id": task["id"],
                    "attempt": task["attempt"],
                    "last_error": task["last_error"],
                }
                for task in tasks
                if task["status"] == TaskStatus.FAILED
            ],
            "force_resolved": [
                {"task_id": task["id"], "reason": task["resolution"]}
                for task in tasks
                if task["status"] == TaskStatus.ROLLED_BACK
            ],
            "rollbacks": list(snapshot.rollbacks),
        }
