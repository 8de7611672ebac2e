from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from phasegate.errors import LedgerError

TASK_LEASED = "TaskLeased"
LEASE_RENEWED = "LeaseRenewed"
WORKER_HEARTBEAT = "WorkerHeartbeat"
TASK_COMPLETED = "TaskCompleted"
TASK_FAILED = "TaskFailed"
LEASE_EXPIRED = "LeaseExpired"
TASK_FORCE_RESOLVED = "TaskForceResolved"
METRICS_RECORDED = "MetricsRecorded"
ROLLBACK_ISSUED = "RollbackIssued"
RUN_ARCHIVED = "RunArchived"

EVENT_TYPES = frozenset(
    {
        TASK_LEASED,
        LEASE_RENEWED,
        WORKER_HEARTBEAT,
        TASK_COMPLETED,
        TASK_FAILED,
        LEASE_EXPIRED,
        TASK_FORCE_RESOLVED,
        METRICS_RECORDED,
        ROLLBACK_ISSUED,
        RUN_ARCHIVED,
    }
)

SCHEMA_VERSION = 1


@dataclass(slots=True, frozen=True)
class LedgerEvent:
    type: str
    at: float
    payload: dict[str, Any] = field(default_factory=dict)
    actor: str | None = None
    sequence: int = 0

    def with_sequence(self, sequence: int) -> LedgerEvent:
        return replace(self, sequence=sequence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "sequence": self.sequence,
            "type": self.type,
            "at": self.at,
            "actor": self.actor,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEvent:
        try:
            event_type = str(data["type"])
            sequence = int(data["sequence"])
            at = float(data["at"])
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerError(f"Malformed ledger event: {data!r}") from exc
        if event_type not in EVENT_TYPES:
            raise LedgerError(f"Unknown ledger event type: {event_type}")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise LedgerError(f"Ledger event {sequence} has a non-object payload.")
        actor = data.get("actor")
        return cls(
            type=event_type,
            at=at,
            payload=payload,
            actor=str(actor) if actor is not None else None,
            sequence=sequence,
        )


def task_leased(
    task_id: str, worker_id: str, *, at: float, lease_expiry: float, attempt: int
) -> LedgerEvent:
    return LedgerEvent(
        type=TASK_LEASED,
        at=at,
        actor=worker_id,
        payload={
            "task_id": task_id,
            "worker_id": worker_id,
            "lease_expiry": lease_expiry,
            "attempt": attempt,
        },
    )


def lease_renewed(task_id: str, worker_id: str, *, at: float, lease_expiry: float) -> LedgerEvent:
    return LedgerEvent(
        type=LEASE_RENEWED,
        at=at,
        actor=worker_id,
        payload={"task_id": task_id, "worker_id": worker_id, "lease_expiry": lease_expiry},
    )


def worker_heartbeat(worker_id: str, *, at: float) -> LedgerEvent:
    return LedgerEvent(
        type=WORKER_HEARTBEAT, at=at, actor=worker_id, payload={"worker_id": worker_id}
    )


def task_completed(
    task_id: str,
    worker_id: str,
    *,
    at: float,
    payload: Any = None,
    metrics: dict[str, Any] | None = None,
) -> LedgerEvent:
    return LedgerEvent(
        type=TASK_COMPLETED,
        at=at,
        actor=worker_id,
        payload={
            "task_id": task_id,
            "worker_id": worker_id,
            "result": payload,
            "metrics": dict(metrics or {}),
        },
    )


def task_failed(
    task_id: str, worker_id: str, *, at: float, error: str, terminal: bool
) -> LedgerEvent:
    return LedgerEvent(
        type=TASK_FAILED,
        at=at,
        actor=worker_id,
        payload={"task_id": task_id, "worker_id": worker_id, "error": error, "terminal": terminal},
    )


def lease_expired(task_id: str, worker_id: str | None, *, at: float, terminal: bool) -> LedgerEvent:
    return LedgerEvent(
        type=LEASE_EXPIRED,
        at=at,
        actor="sweeper",
        payload={"task_id": task_id, "worker_id": worker_id, "terminal": terminal},
    )


def task_force_resolved(
    task_id: str, *, at: float, reason: str, actor: str = "operator"
) -> LedgerEvent:
    return LedgerEvent(
        type=TASK_FORCE_RESOLVED,
        at=at,
        actor=actor,
        payload={"task_id": task_id, "reason": reason},
    )


def metrics_recorded(metrics: dict[str, Any], *, at: float, source: str) -> LedgerEvent:
    return LedgerEvent(
        type=METRICS_RECORDED,
        at=at,
        actor=source,
        payload={"metrics": dict(metrics), "source": source},
    )


def rollback_issued(
    phase_id: str, *, at: float, reason: str, trigger: str, actor: str = "operator"
) -> LedgerEvent:
    return LedgerEvent(
        type=ROLLBACK_ISSUED,
        at=at,
        actor=actor,
        payload={"phase_id": phase_id, "reason": reason, "trigger": trigger},
    )


def run_archived(path: str, *, at: float) -> LedgerEvent:
    return LedgerEvent(type=RUN_ARCHIVED, at=at, actor="operator", payload={"path": path})
