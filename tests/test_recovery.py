import pytest

from phasegate.config import RecoveryConfig, SchedulerConfig
from phasegate.errors import SchedulerError, TerminalFailureError
from phasegate.graph import TaskGraph
from phasegate.ledger import CoordinationLedger, PhaseStatus, TaskStatus
from phasegate.recovery import REGRESSION_TRIGGER, RecoveryManager
from phasegate.scheduler import Assignment, Scheduler, TaskResult


def _graph() -> TaskGraph:
    graph = TaskGraph.from_dict(
        {
            "phases": [
                {"id": "A", "order": 0},
                {
                    "id": "C",
                    "order": 1,
                    "criteria": [{"name": "coverage", "expression": "coverage >= 0.90"}],
                },
                {"id": "D", "order": 2},
            ],
            "tasks": [
                {"id": "T1", "phase": "A"},
                {"id": "T5", "phase": "C"},
                {"id": "T6", "phase": "D", "depends_on": ["T5"]},
            ],
        }
    )
    graph.validate()
    return graph


def _build(auto_rollback: bool = False) -> tuple[Scheduler, RecoveryManager]:
    ledger = CoordinationLedger(_graph())
    clock = lambda: 1_000.0  # noqa: E731
    recovery = RecoveryManager(ledger, RecoveryConfig(auto_rollback=auto_rollback), clock=clock)
    scheduler = Scheduler(ledger, SchedulerConfig(), clock=clock, recovery=recovery)
    return scheduler, recovery


def _run_next(scheduler: Scheduler, metrics: dict | None = None) -> str:
    assignment = scheduler.request_work("w1")
    assert isinstance(assignment, Assignment), assignment
    scheduler.report_complete(
        "w1", assignment.task_id, TaskResult(payload="ok", metrics=metrics or {})
    )
    return assignment.task_id


def _complete_everything(scheduler: Scheduler) -> None:
    assert _run_next(scheduler) == "T1"
    scheduler.record_metrics({"coverage": 0.95})
    assert _run_next(scheduler, {"lines": 120}) == "T5"
    assert _run_next(scheduler) == "T6"


def test_manual_rollback_after_regression_resets_suffix() -> None:
    scheduler, recovery = _build()
    _complete_everything(scheduler)

    scheduler.record_metrics({"coverage": 0.70})

    snapshot = scheduler.ledger.snapshot()
    assert snapshot.phases["C"].status == PhaseStatus.COMPLETE
    regressions = recovery.detect_regressions()
    assert [item.phase_id for item in regressions] == ["C"]
    assert "coverage >= 0.90" in regressions[0].describe()

    record = recovery.rollback("C", "coverage regression")

    assert record.phase_id == "C"
    assert record.trigger == "operator"
    assert record.affected_phases == ("C", "D")
    assert record.affected_tasks == ("T5", "T6")

    snapshot = scheduler.ledger.snapshot()
    assert snapshot.phases["A"].status == PhaseStatus.COMPLETE
    assert snapshot.tasks["T1"].status == TaskStatus.DONE
    assert snapshot.phases["C"].status == PhaseStatus.LOCKED
    assert snapshot.phases["D"].status == PhaseStatus.LOCKED
    assert snapshot.tasks["T5"].status == TaskStatus.PENDING
    assert snapshot.tasks["T6"].status == TaskStatus.PENDING
    assert snapshot.tasks["T5"].result is None
    assert "T5.lines" not in snapshot.metrics
    assert recovery.detect_regressions() == []

    scheduler.record_metrics({"coverage": 0.92})

    snapshot = scheduler.ledger.snapshot()
    assert snapshot.phases["C"].status == PhaseStatus.OPEN
    assert snapshot.tasks["T5"].status == TaskStatus.RUNNABLE
    assert snapshot.tasks["T6"].status == TaskStatus.PENDING


def test_rollback_reopens_target_phase_when_gate_still_holds() -> None:
    scheduler, recovery = _build()
    _complete_everything(scheduler)

    recovery.rollback("D", "redo validation")

    snapshot = scheduler.ledger.snapshot()
    assert snapshot.phases["C"].status == PhaseStatus.COMPLETE
    assert snapshot.phases["D"].status == PhaseStatus.OPEN
    assert snapshot.tasks["T6"].status == TaskStatus.RUNNABLE
    assert snapshot.tasks["T6"].attempt == 1


def test_rollback_releases_live_leases() -> None:
    scheduler, recovery = _build()
    _run_next(scheduler)
    scheduler.record_metrics({"coverage": 0.95})
    assignment = scheduler.request_work("w2")
    assert isinstance(assignment, Assignment)

    recovery.rollback("C", "abandon")

    snapshot = scheduler.ledger.snapshot()
    assert snapshot.tasks["T5"].lease_owner is None
    assert snapshot.workers["w2"].current_lease is None
    assert snapshot.tasks["T5"].status == TaskStatus.RUNNABLE


def test_auto_rollback_on_regression() -> None:
    scheduler, recovery = _build(auto_rollback=True)
    _complete_everything(scheduler)

    scheduler.record_metrics({"coverage": 0.5})

    history = recovery.history()
    assert len(history) == 1
    assert history[0].phase_id == "C"
    assert history[0].trigger == REGRESSION_TRIGGER
    assert "coverage" in history[0].reason
    snapshot = scheduler.ledger.snapshot()
    assert snapshot.phases["C"].status == PhaseStatus.LOCKED
    assert snapshot.tasks["T6"].status == TaskStatus.PENDING


def test_regression_without_auto_rollback_only_reports(caplog: pytest.LogCaptureFixture) -> None:
    scheduler, recovery = _build()
    _complete_everything(scheduler)

    with caplog.at_level("WARNING", logger="phasegate.recovery"):
        scheduler.record_metrics({"coverage": 0.5})

    assert recovery.history() == []
    assert "phase C criteria regressed" in caplog.text


def test_open_phase_relocks_when_its_criterion_regresses() -> None:
    scheduler, recovery = _build()
    _run_next(scheduler)
    scheduler.record_metrics({"coverage": 0.95})
    assert scheduler.ledger.snapshot().phases["C"].status == PhaseStatus.OPEN

    scheduler.record_metrics({"coverage": 0.80})

    snapshot = scheduler.ledger.snapshot()
    assert snapshot.phases["C"].status == PhaseStatus.LOCKED
    assert snapshot.tasks["T5"].status == TaskStatus.PENDING
    assert [item.phase_id for item in recovery.detect_regressions()] == ["C"]


def test_rollback_of_unknown_phase_is_rejected() -> None:
    _scheduler, recovery = _build()

    with pytest.raises(SchedulerError, match="Unknown phase"):
        recovery.rollback("Z", "nope")


def test_terminal_failures_listing() -> None:
    scheduler, recovery = _build()
    scheduler.config.max_attempts = 1
    assignment = scheduler.request_work("w1")
    assert isinstance(assignment, Assignment)

    with pytest.raises(TerminalFailureError, match="failed terminally"):
        scheduler.report_failed("w1", "T1", "disk full")

    assert recovery.terminal_failures() == [
        {"task_id": "T1", "phase_id": "A", "attempt": 1, "last_error": "disk full"}
    ]
