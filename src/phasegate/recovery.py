from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from phasegate import gates
from phasegate.config import RecoveryConfig
from phasegate.errors import SchedulerError
from phasegate.ledger import events as ev
from phasegate.ledger.state import LedgerState, TaskStatus
from phasegate.ledger.store import CoordinationLedger

logger = logging.getLogger(__name__)

REGRESSION_TRIGGER = "criterion-regression"


@dataclass(slots=True, frozen=True)
class RollbackRecord:
    sequence: int
    phase_id: str
    reason: str
    trigger: str
    at: float
    affected_phases: tuple[str, ...] = ()
    affected_tasks: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackRecord:
        return cls(
            sequence=int(data["sequence"]),
            phase_id=str(data["phase_id"]),
            reason=str(data.get("reason", "")),
            trigger=str(data.get("trigger", "operator")),
            at=float(data.get("at", 0.0)),
            affected_phases=tuple(data.get("affected_phases", [])),
            affected_tasks=tuple(data.get("affected_tasks", [])),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "phase_id": self.phase_id,
            "reason": self.reason,
            "trigger": self.trigger,
            "at": self.at,
            "affected_phases": list(self.affected_phases),
            "affected_tasks": list(self.affected_tasks),
        }


@dataclass(slots=True, frozen=True)
class Regression:
    phase_id: str
    unmet: tuple[gates.CriterionResult, ...] = field(default_factory=tuple)

    def describe(self) -> str:
        return ", ".join(str(item) for item in self.unmet)


class RecoveryManager:
    """Issues rollbacks, by hand or when an admitted phase's criteria regress."""

    def __init__(
        self,
        ledger: CoordinationLedger,
        config: RecoveryConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.graph = ledger.graph
        self.config = config or RecoveryConfig()
        self.clock = clock

    def rollback(
        self,
        phase_id: str,
        reason: str,
        *,
        trigger: str = "operator",
        actor: str = "operator",
    ) -> RollbackRecord:
        try:
            self.graph.phase(phase_id)
        except KeyError as exc:
            raise SchedulerError(f"Unknown phase: {phase_id}") from exc
        sequence = self.ledger.append(
            ev.rollback_issued(
                phase_id, at=self.clock(), reason=reason, trigger=trigger, actor=actor
            )
        )
        snapshot = self.ledger.snapshot()
        record = next(
            RollbackRecord.from_dict(item) for item in snapshot.rollbacks
            if item["sequence"] == sequence
        )
        logger.warning(
            "rollback of phase %s (%s): %s; reverted tasks %s",
            phase_id, trigger, reason, ", ".join(record.affected_tasks) or "none",
        )
        return record

    def detect_regressions(self, snapshot: LedgerState | None = None) -> list[Regression]:
        current = snapshot or self.ledger.snapshot()
        regressions: list[Regression] = []
        for phase in self.graph.ordered_phases():
            if not current.phases[phase.id].admitted:
                continue
            unmet = tuple(
                result
                for result in (criterion.evaluate(current) for criterion in phase.criteria)
                if not result.passed
            )
            if unmet:
                regressions.append(Regression(phase_id=phase.id, unmet=unmet))
        return regressions

    def check(self, auto_rollback: bool | None = None) -> list[RollbackRecord]:
        auto = self.config.auto_rollback if auto_rollback is None else auto_rollback
        regressions = self.detect_regressions()
        if not regressions:
            return []
        earliest = regressions[0]
        if not auto:
            for item in regressions:
                logger.warning("phase %s criteria regressed: %s", item.phase_id, item.describe())
            return []
        # later phases are covered by rolling back the earliest one
        return [
            self.rollback(
                earliest.phase_id,
                f"criteria regressed: {earliest.describe()}",
                trigger=REGRESSION_TRIGGER,
                actor="recovery",
            )
        ]

    def history(self) -> list[RollbackRecord]:
        return [RollbackRecord.from_dict(item) for item in self.ledger.snapshot().rollbacks]

    def terminal_failures(self) -> list[dict[str, Any]]:
        snapshot = self.ledger.snapshot()
        return [
            {"task_id": task.id, "phase_id": task.phase_id, "attempt": task.attempt,
             "last_error": task.last_error}
            for task in sorted(snapshot.tasks.values(), key=lambda item: item.id)
            if task.status == TaskStatus.FAILED
        ]
