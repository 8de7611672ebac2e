import pytest

from phasegate import gates
from phasegate.gates import CriterionSyntaxError, callable_criterion, parse_criterion
from phasegate.graph import PhaseDef, TaskDef, TaskGraph, build_graph
from phasegate.ledger import CoordinationLedger
from phasegate.ledger import events as ev
from phasegate.ledger.state import LedgerState, PhaseStatus


def _graph() -> TaskGraph:
    graph = TaskGraph.from_dict(
        {
            "phases": [
                {"id": "A", "order": 0},
                {
                    "id": "B",
                    "order": 1,
                    "criteria": [{"name": "coverage", "expression": "coverage >= 0.90"}],
                },
            ],
            "tasks": [{"id": "T1", "phase": "A"}, {"id": "T2", "phase": "B"}],
        }
    )
    graph.validate()
    return graph


def _snapshot(
    metrics: dict | None = None, a_status: PhaseStatus = PhaseStatus.COMPLETE
) -> LedgerState:
    state = LedgerState.initial(_graph())
    state.phases["A"].status = a_status
    state.metrics.update(metrics or {})
    return state


def test_parse_metric_comparison() -> None:
    criterion = parse_criterion("coverage", "coverage>=0.90")

    assert criterion.metric == "coverage"
    assert criterion.op == ">="
    assert criterion.expected == pytest.approx(0.9)


def test_parse_phase_status_reference() -> None:
    criterion = parse_criterion("assessed", "phase(assessment).status == Complete")

    assert criterion.phase_ref == "assessment"
    assert criterion.expected == "Complete"


@pytest.mark.parametrize(
    "expression",
    ["coverage", "coverage >= high", "phase(A).status == Done", "flag > true", "name < 'x'"],
)
def test_parse_rejects_malformed_expressions(expression: str) -> None:
    with pytest.raises(CriterionSyntaxError):
        parse_criterion("bad", expression)


def test_missing_metric_fails_closed() -> None:
    phase = _graph().phase("B")

    decision = gates.evaluate(phase, _snapshot())

    assert decision.admitted is False
    assert [item.name for item in decision.unmet] == ["coverage"]
    assert "not recorded" in decision.unmet[0].reason


def test_non_numeric_metric_fails_closed() -> None:
    phase = _graph().phase("B")

    decision = gates.evaluate(phase, _snapshot({"coverage": "95%"}))

    assert decision.admitted is False


def test_gate_admits_when_predecessor_complete_and_criteria_hold() -> None:
    phase = _graph().phase("B")

    decision = gates.evaluate(phase, _snapshot({"coverage": 0.93}))

    assert decision.admitted is True
    assert decision.unmet == ()
    assert len(decision.results) == 2


def test_gate_lists_incomplete_predecessor() -> None:
    phase = _graph().phase("B")

    decision = gates.evaluate(phase, _snapshot({"coverage": 0.99}, a_status=PhaseStatus.OPEN))

    assert decision.admitted is False
    assert [item.expression for item in decision.unmet] == ["phase(A).status == Complete"]
    assert decision.unmet[0].observed == "Open"
    assert "phase(A).status == Complete (observed Open)" in decision.reasons()


def test_evaluate_is_deterministic_for_a_snapshot() -> None:
    phase = _graph().phase("B")
    snapshot = _snapshot({"coverage": 0.7}, a_status=PhaseStatus.OPEN)

    first = gates.evaluate(phase, snapshot)
    second = gates.evaluate(phase, snapshot)

    assert first == second
    assert first.to_dict() == second.to_dict()


def test_string_and_boolean_literals_need_matching_types() -> None:
    snapshot = _snapshot({"review": "approved", "signed": True, "flag": 1})

    assert parse_criterion("a", "review == 'approved'").evaluate(snapshot).passed is True
    assert parse_criterion("b", "signed == true").evaluate(snapshot).passed is True
    assert parse_criterion("c", "flag == true").evaluate(snapshot).passed is False
    assert parse_criterion("d", "signed >= 1").evaluate(snapshot).passed is False


def test_phase_reference_criterion_reads_snapshot_status() -> None:
    snapshot = _snapshot(a_status=PhaseStatus.OPEN)

    result = parse_criterion("a-done", "phase(A).status != Complete").evaluate(snapshot)
    unknown = parse_criterion("z-done", "phase(Z).status == Complete").evaluate(snapshot)

    assert result.passed is True
    assert unknown.passed is False


def test_callable_criterion_failures_fail_closed() -> None:
    snapshot = _snapshot({"coverage": 0.95})
    ok = callable_criterion("ratio", lambda metrics: metrics["coverage"] > 0.9)
    broken = callable_criterion("broken", lambda metrics: metrics["absent"] > 1)
    phase = PhaseDef(id="B", order=1, criteria=(ok, broken))

    decision = gates.evaluate(phase, snapshot)

    assert [item.name for item in decision.unmet] == ["broken"]


def test_any_exception_from_callable_criterion_fails_closed() -> None:
    ratio = callable_criterion("ratio", lambda metrics: metrics["a"] / metrics["b"] > 1)
    graph = build_graph(
        [PhaseDef(id="A", order=0), PhaseDef(id="B", order=1, criteria=(ratio,))],
        [TaskDef(id="T1", phase_id="A"), TaskDef(id="T2", phase_id="B")],
    )
    ledger = CoordinationLedger(graph)
    ledger.append(ev.task_leased("T1", "w1", at=1.0, lease_expiry=31.0, attempt=1))
    ledger.append(ev.task_completed("T1", "w1", at=2.0, payload=None, metrics={}))

    ledger.append(ev.metrics_recorded({"a": 1, "b": 0}, at=3.0, source="external"))

    snapshot = ledger.snapshot()
    assert snapshot.phases["B"].status == PhaseStatus.LOCKED
    decision = gates.evaluate(graph.phase("B"), snapshot)
    assert "ZeroDivisionError" in decision.unmet[0].reason
    assert ledger.replay_from(0).to_dict() == snapshot.to_dict()


def test_criteria_hold_ignores_predecessor() -> None:
    phase = _graph().phase("B")
    snapshot = _snapshot({"coverage": 0.95}, a_status=PhaseStatus.OPEN)

    assert gates.criteria_hold(phase, snapshot) is True
    assert gates.evaluate(phase, snapshot).admitted is False
