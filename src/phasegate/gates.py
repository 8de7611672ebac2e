"""Phase admission gates.

A criterion is a single comparison over the ledger's metrics map or over the
status of another phase. Evaluation is pure: the same snapshot always yields
the same decision, and anything that cannot be observed fails closed.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from phasegate.graph import PhaseDef, TaskGraph
    from phasegate.ledger.state import LedgerState

COMPARISON_OPERATORS = (">=", "<=", "==", "!=", ">", "<")
EQUALITY_OPERATORS = {"==", "!="}
METRIC_PATTERN = re.compile(
    r"^\s*(?P<metric>[A-Za-z_][\w.\-/]*)\s*(?P<op>>=|<=|==|!=|>|<)\s*(?P<literal>.+?)\s*$"
)
PHASE_PATTERN = re.compile(
    r"^\s*phase\(\s*(?P<phase>[^)\s]+)\s*\)\.status\s*(?P<op>==|!=)\s*(?P<status>\w+)\s*$"
)
PHASE_STATUSES = {"Locked", "Open", "Complete"}


class CriterionSyntaxError(ValueError):
    """Raised when a criterion expression cannot be parsed."""


def _parse_literal(raw: str) -> Any:
    text = raw.strip()
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        return text[1:-1]
    try:
        if re.fullmatch(r"[+-]?\d+", text):
            return int(text)
        return float(text)
    except ValueError as exc:
        raise CriterionSyntaxError(f"Unsupported literal: {raw!r}") from exc


def _compare(observed: Any, op: str, expected: Any) -> bool:
    if isinstance(expected, bool) or isinstance(expected, str):
        if op not in EQUALITY_OPERATORS or type(observed) is not type(expected):
            return False
        return (observed == expected) if op == "==" else (observed != expected)
    if isinstance(observed, bool) or not isinstance(observed, (int, float)):
        return False
    if op == ">=":
        return observed >= expected
    if op == "<=":
        return observed <= expected
    if op == ">":
        return observed > expected
    if op == "<":
        return observed < expected
    if op == "==":
        return observed == expected
    return observed != expected


@dataclass(slots=True, frozen=True)
class CriterionResult:
    name: str
    expression: str
    passed: bool
    observed: Any = None
    reason: str = ""
    sequence: int = 0

    def __str__(self) -> str:
        if self.passed:
            return f"{self.expression} (ok)"
        return f"{self.expression} ({self.reason})" if self.reason else self.expression

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "expression": self.expression,
            "passed": self.passed,
            "observed": self.observed,
            "reason": self.reason,
            "sequence": self.sequence,
        }


@dataclass(slots=True, frozen=True)
class Criterion:
    name: str
    expression: str
    metric: str | None = None
    phase_ref: str | None = None
    op: str = "=="
    expected: Any = None
    check: Callable[[Mapping[str, Any]], bool] | None = field(default=None, compare=False)

    def evaluate(self, snapshot: LedgerState) -> CriterionResult:
        sequence = snapshot.sequence
        if self.check is not None:
            try:
                passed = bool(self.check(dict(snapshot.metrics)))
            except Exception as exc:
                return CriterionResult(
                    self.name, self.expression, False, reason=f"check raised {exc!r}",
                    sequence=sequence,
                )
            return CriterionResult(
                self.name, self.expression, passed,
                reason="" if passed else "check returned false", sequence=sequence,
            )

        if self.phase_ref is not None:
            phase_state = snapshot.phases.get(self.phase_ref)
            if phase_state is None:
                return CriterionResult(
                    self.name, self.expression, False,
                    reason=f"phase '{self.phase_ref}' is unknown", sequence=sequence,
                )
            observed = str(phase_state.status)
            passed = _compare(observed, self.op, self.expected)
            return CriterionResult(
                self.name, self.expression, passed, observed=observed,
                reason="" if passed else f"observed {observed}", sequence=sequence,
            )

        assert self.metric is not None
        if self.metric not in snapshot.metrics:
            return CriterionResult(
                self.name, self.expression, False,
                reason=f"metric '{self.metric}' is not recorded", sequence=sequence,
            )
        observed = snapshot.metrics[self.metric]
        passed = _compare(observed, self.op, self.expected)
        return CriterionResult(
            self.name, self.expression, passed, observed=observed,
            reason="" if passed else f"observed {json.dumps(observed)}", sequence=sequence,
        )


def parse_criterion(name: str, expression: str) -> Criterion:
    phase_match = PHASE_PATTERN.match(expression)
    if phase_match:
        status = phase_match.group("status")
        if status not in PHASE_STATUSES:
            raise CriterionSyntaxError(f"Unknown phase status {status!r} in {expression!r}")
        return Criterion(
            name=name,
            expression=expression.strip(),
            phase_ref=phase_match.group("phase"),
            op=phase_match.group("op"),
            expected=status,
        )

    metric_match = METRIC_PATTERN.match(expression)
    if not metric_match or metric_match.group("metric") == "phase":
        raise CriterionSyntaxError(f"Cannot parse criterion {name!r}: {expression!r}")
    expected = _parse_literal(metric_match.group("literal"))
    op = metric_match.group("op")
    if isinstance(expected, (bool, str)) and op not in EQUALITY_OPERATORS:
        raise CriterionSyntaxError(
            f"Operator {op!r} needs a numeric literal in {expression!r}"
        )
    return Criterion(
        name=name,
        expression=expression.strip(),
        metric=metric_match.group("metric"),
        op=op,
        expected=expected,
    )


def callable_criterion(
    name: str, check: Callable[[Mapping[str, Any]], bool], description: str = ""
) -> Criterion:
    return Criterion(name=name, expression=description or name, check=check)


@dataclass(slots=True, frozen=True)
class GateDecision:
    phase_id: str
    admitted: bool
    unmet: tuple[CriterionResult, ...] = ()
    results: tuple[CriterionResult, ...] = ()
    sequence: int = 0

    def reasons(self) -> list[str]:
        return [str(item) for item in self.unmet]

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "admitted": self.admitted,
            "sequence": self.sequence,
            "unmet": [item.to_dict() for item in self.unmet],
            "results": [item.to_dict() for item in self.results],
        }


def _predecessor_result(phase: PhaseDef, snapshot: LedgerState) -> CriterionResult | None:
    previous = None
    for candidate_id, state in snapshot.phases.items():
        if state.order == phase.order - 1:
            previous = (candidate_id, state)
            break
    if previous is None:
        return None
    previous_id, previous_state = previous
    expression = f"phase({previous_id}).status == Complete"
    observed = str(previous_state.status)
    passed = observed == "Complete"
    return CriterionResult(
        name=f"{previous_id}-complete",
        expression=expression,
        passed=passed,
        observed=observed,
        reason="" if passed else f"observed {observed}",
        sequence=snapshot.sequence,
    )


def evaluate(phase: PhaseDef, snapshot: LedgerState) -> GateDecision:
    """Admit ``phase`` iff its predecessor is Complete and every criterion holds."""
    results: list[CriterionResult] = []
    predecessor = _predecessor_result(phase, snapshot)
    if predecessor is not None:
        results.append(predecessor)
    for criterion in phase.criteria:
        results.append(criterion.evaluate(snapshot))
    unmet = tuple(item for item in results if not item.passed)
    return GateDecision(
        phase_id=phase.id,
        admitted=not unmet,
        unmet=unmet,
        results=tuple(results),
        sequence=snapshot.sequence,
    )


def criteria_hold(phase: PhaseDef, snapshot: LedgerState) -> bool:
    """Entry criteria only, without the predecessor check."""
    return all(criterion.evaluate(snapshot).passed for criterion in phase.criteria)


def evaluate_all(graph: TaskGraph, snapshot: LedgerState) -> dict[str, GateDecision]:
    return {phase.id: evaluate(phase, snapshot) for phase in graph.ordered_phases()}
