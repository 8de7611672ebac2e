from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Collection, Mapping
from dataclasses import dataclass
from typing import Any

from phasegate.config import WorkerConfig
from phasegate.errors import LeaseExpiredError, SchedulerError, TerminalFailureError
from phasegate.scheduler import Assignment, NoWorkAvailable, Scheduler, TaskResult

logger = logging.getLogger(__name__)

Executor = Callable[[Assignment], Awaitable[TaskResult | Mapping[str, Any] | None]]


class WorkerSession:
    """Client side of the worker protocol.

    The session keeps nothing but the current assignment (its lease token);
    everything else lives in the ledger.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        worker_id: str,
        roles: Collection[str] | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.worker_id = worker_id
        self.roles = set(roles) if roles is not None else None
        self._assignment: Assignment | None = None

    @property
    def assignment(self) -> Assignment | None:
        return self._assignment

    def _require_assignment(self) -> Assignment:
        if self._assignment is None:
            raise SchedulerError(f"Worker {self.worker_id} holds no lease.")
        return self._assignment

    def claim(self) -> Assignment | NoWorkAvailable:
        outcome = self.scheduler.request_work(self.worker_id, self.roles)
        if isinstance(outcome, Assignment):
            self._assignment = outcome
        return outcome

    def heartbeat(self) -> float | None:
        if self._assignment is None:
            return self.scheduler.heartbeat(self.worker_id)
        try:
            return self.scheduler.heartbeat(
                self.worker_id,
                task_id=self._assignment.task_id,
                lease_token=self._assignment.lease_token,
            )
        except LeaseExpiredError:
            self._assignment = None
            raise

    def complete(self, result: TaskResult | Mapping[str, Any] | None = None) -> int:
        assignment = self._require_assignment()
        try:
            return self.scheduler.report_complete(
                self.worker_id, assignment.task_id, result, lease_token=assignment.lease_token
            )
        finally:
            self._assignment = None

    def fail(self, error: str) -> int:
        assignment = self._require_assignment()
        try:
            return self.scheduler.report_failed(
                self.worker_id, assignment.task_id, error, lease_token=assignment.lease_token
            )
        finally:
            self._assignment = None


@dataclass(slots=True)
class WorkerRunSummary:
    worker_id: str
    completed: int = 0
    failed: int = 0
    terminal: int = 0
    lost_leases: int = 0

    @property
    def processed(self) -> int:
        return self.completed + self.failed + self.terminal + self.lost_leases


async def _wait(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except TimeoutError:
        pass


async def _heartbeat_loop(session: WorkerSession, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            session.heartbeat()
        except LeaseExpiredError as exc:
            logger.warning("worker %s lost its lease: %s", session.worker_id, exc)
            return


async def run_worker(
    session: WorkerSession,
    execute: Executor,
    *,
    config: WorkerConfig | None = None,
    stop: asyncio.Event | None = None,
    max_tasks: int | None = None,
    stop_when_idle: bool = False,
) -> WorkerRunSummary:
    """Claim, execute and report tasks until stopped.

    While ``execute`` runs a background task heartbeats the lease. When no
    work is available the loop backs off exponentially; it returns once every
    phase is complete, when ``stop`` is set, after ``max_tasks`` or on the
    first idle poll with ``stop_when_idle``.
    """
    settings = config or WorkerConfig()
    stop_event = stop or asyncio.Event()
    summary = WorkerRunSummary(worker_id=session.worker_id)
    backoff = float(settings.backoff_initial_seconds)

    while not stop_event.is_set():
        if max_tasks is not None and summary.processed >= max_tasks:
            break
        outcome = session.claim()
        if not isinstance(outcome, Assignment):
            if outcome.reason == "all phases complete" or stop_when_idle:
                logger.info("worker %s idle: %s", session.worker_id, outcome.reason)
                break
            logger.debug(
                "worker %s found no work (%s); retrying in %.2fs",
                session.worker_id, outcome.reason, backoff,
            )
            await _wait(stop_event, backoff)
            backoff = min(backoff * 2, float(settings.backoff_max_seconds))
            continue

        backoff = float(settings.backoff_initial_seconds)
        heartbeat = asyncio.create_task(
            _heartbeat_loop(session, float(settings.heartbeat_interval_seconds))
        )
        result: TaskResult | Mapping[str, Any] | None = None
        error: str | None = None
        try:
            result = await execute(outcome)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        if session.assignment is None:
            # heartbeat found the lease reclaimed; the result is stale
            summary.lost_leases += 1
            continue
        try:
            if error is None:
                session.complete(result)
                summary.completed += 1
            else:
                session.fail(error)
                summary.failed += 1
        except LeaseExpiredError as exc:
            logger.warning("worker %s result discarded: %s", session.worker_id, exc)
            summary.lost_leases += 1
        except TerminalFailureError as exc:
            logger.error("worker %s: %s", session.worker_id, exc)
            summary.terminal += 1
    return summary
