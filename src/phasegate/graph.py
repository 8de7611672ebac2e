from __future__ import annotations

import json
import tomllib
from collections.abc import Iterable
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from pathlib import Path
from typing import TYPE_CHECKING, Any

from phasegate.errors import InvalidDependencyError
from phasegate.gates import Criterion, CriterionSyntaxError, parse_criterion

if TYPE_CHECKING:
    from phasegate.ledger.state import LedgerState

SATISFIED_STATUSES = {"Done", "RolledBack"}


@dataclass(slots=True, frozen=True)
class PhaseDef:
    id: str
    order: int
    criteria: tuple[Criterion, ...] = ()
    description: str = ""


@dataclass(slots=True, frozen=True)
class TaskDef:
    id: str
    phase_id: str
    depends_on: tuple[str, ...] = ()
    role: str | None = None
    description: str = ""


@dataclass(slots=True)
class TaskGraph:
    """Static phases and tasks. Read-only once ``validate`` has passed."""

    phases: list[PhaseDef] = field(default_factory=list)
    tasks: list[TaskDef] = field(default_factory=list)
    _problems: list[str] = field(default_factory=list, repr=False)

    def ordered_phases(self) -> list[PhaseDef]:
        return sorted(self.phases, key=lambda phase: phase.order)

    def phase(self, phase_id: str) -> PhaseDef:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise KeyError(phase_id)

    def task(self, task_id: str) -> TaskDef:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise KeyError(task_id)

    def has_task(self, task_id: str) -> bool:
        return any(task.id == task_id for task in self.tasks)

    def tasks_in_phase(self, phase_id: str) -> list[TaskDef]:
        return sorted(
            (task for task in self.tasks if task.phase_id == phase_id),
            key=lambda task: task.id,
        )

    def phases_from(self, phase_id: str) -> list[PhaseDef]:
        """The phase and every later phase, in order."""
        start = self.phase(phase_id).order
        return [phase for phase in self.ordered_phases() if phase.order >= start]

    def validate(self) -> None:
        problems = list(self._problems)
        phase_orders: dict[str, int] = {}
        for phase in self.phases:
            if phase.id in phase_orders:
                problems.append(f"Duplicate phase id: {phase.id}")
            phase_orders[phase.id] = phase.order

        orders = sorted(phase.order for phase in self.phases)
        if len(set(orders)) != len(orders):
            problems.append(f"Phase orders must be unique, got {orders}")
        elif orders and orders != list(range(len(orders))):
            problems.append(f"Phase orders must be contiguous from 0, got {orders}")

        task_phase: dict[str, str] = {}
        for task in self.tasks:
            if task.id in task_phase:
                problems.append(f"Duplicate task id: {task.id}")
            task_phase[task.id] = task.phase_id
            if task.phase_id not in phase_orders:
                problems.append(f"Task {task.id} references unknown phase {task.phase_id}")

        for task in self.tasks:
            own_order = phase_orders.get(task.phase_id)
            for dep_id in task.depends_on:
                if dep_id == task.id:
                    problems.append(f"Task {task.id} depends on itself")
                    continue
                if dep_id not in task_phase:
                    problems.append(f"Task {task.id} depends on unknown task {dep_id}")
                    continue
                dep_order = phase_orders.get(task_phase[dep_id])
                if own_order is not None and dep_order is not None and dep_order > own_order:
                    problems.append(
                        f"Task {task.id} (phase {task.phase_id}) depends on {dep_id} "
                        f"in later phase {task_phase[dep_id]}"
                    )

        sorter: TopologicalSorter[str] = TopologicalSorter()
        for task in self.tasks:
            sorter.add(task.id, *[dep for dep in task.depends_on if dep in task_phase])
        try:
            sorter.prepare()
        except CycleError as exc:
            cycle = exc.args[1] if len(exc.args) > 1 else []
            problems.append("Dependency cycle: " + " -> ".join(str(item) for item in cycle))

        for phase in self.phases:
            problems.extend(self._criterion_problems(phase, phase_orders, task_phase))

        if problems:
            raise InvalidDependencyError(problems)

    @staticmethod
    def _criterion_problems(
        phase: PhaseDef, phase_orders: dict[str, int], task_phase: dict[str, str]
    ) -> list[str]:
        problems: list[str] = []
        for criterion in phase.criteria:
            if criterion.phase_ref is not None:
                ref_order = phase_orders.get(criterion.phase_ref)
                if ref_order is None:
                    problems.append(
                        f"Criterion {criterion.name} of phase {phase.id} references "
                        f"unknown phase {criterion.phase_ref}"
                    )
                elif ref_order >= phase.order:
                    problems.append(
                        f"Criterion {criterion.name} of phase {phase.id} gates on its own "
                        f"or a later phase ({criterion.phase_ref})"
                    )
            if criterion.metric is not None and "." in criterion.metric:
                owner = criterion.metric.split(".", maxsplit=1)[0]
                owner_phase = task_phase.get(owner)
                if owner_phase is not None and phase_orders.get(owner_phase, -1) >= phase.order:
                    problems.append(
                        f"Criterion {criterion.name} of phase {phase.id} reads metric "
                        f"{criterion.metric} emitted by task {owner} of phase {owner_phase}"
                    )
        return problems

    def runnable_tasks(self, snapshot: LedgerState, now: float) -> list[str]:
        phase_orders = {phase.id: phase.order for phase in self.phases}
        runnable: list[str] = []
        for task in sorted(self.tasks, key=lambda item: (phase_orders[item.phase_id], item.id)):
            phase_state = snapshot.phases.get(task.phase_id)
            task_state = snapshot.tasks.get(task.id)
            if phase_state is None or task_state is None:
                continue
            if phase_state.status != "Open":
                continue
            if task_state.status in {"Pending", "Runnable"}:
                pass
            elif task_state.status == "Leased":
                if task_state.lease_expiry is None or task_state.lease_expiry > now:
                    continue
            else:
                continue
            if all(
                snapshot.tasks[dep].status in SATISFIED_STATUSES for dep in task.depends_on
            ):
                runnable.append(task.id)
        return runnable

    def to_dict(self) -> dict[str, Any]:
        return {
            "phases": [
                {
                    "id": phase.id,
                    "order": phase.order,
                    "description": phase.description,
                    "criteria": [
                        {"name": item.name, "expression": item.expression}
                        for item in phase.criteria
                    ],
                }
                for phase in self.ordered_phases()
            ],
            "tasks": [
                {
                    "id": task.id,
                    "phase": task.phase_id,
                    "depends_on": list(task.depends_on),
                    "role": task.role,
                    "description": task.description,
                }
                for task in self.tasks
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskGraph:
        problems: list[str] = []
        phases: list[PhaseDef] = []
        for raw in data.get("phases", []):
            if not isinstance(raw, dict) or "id" not in raw or "order" not in raw:
                problems.append(f"Phase entry needs 'id' and 'order': {raw!r}")
                continue
            criteria: list[Criterion] = []
            for index, item in enumerate(raw.get("criteria", []), start=1):
                if isinstance(item, str):
                    name, expression = f"{raw['id']}-criterion-{index}", item
                else:
                    name = str(item.get("name") or f"{raw['id']}-criterion-{index}")
                    expression = str(item.get("expression", ""))
                try:
                    criteria.append(parse_criterion(name, expression))
                except CriterionSyntaxError as exc:
                    problems.append(f"Phase {raw['id']}: {exc}")
            phases.append(
                PhaseDef(
                    id=str(raw["id"]),
                    order=int(raw["order"]),
                    criteria=tuple(criteria),
                    description=str(raw.get("description", "")),
                )
            )

        tasks: list[TaskDef] = []
        for raw in data.get("tasks", []):
            phase_id = raw.get("phase", raw.get("phase_id")) if isinstance(raw, dict) else None
            if not isinstance(raw, dict) or "id" not in raw or phase_id is None:
                problems.append(f"Task entry needs 'id' and 'phase': {raw!r}")
                continue
            role = raw.get("role")
            tasks.append(
                TaskDef(
                    id=str(raw["id"]),
                    phase_id=str(phase_id),
                    depends_on=tuple(str(dep) for dep in raw.get("depends_on", [])),
                    role=str(role) if role else None,
                    description=str(raw.get("description", "")),
                )
            )
        return cls(phases=phases, tasks=tasks, _problems=problems)


def build_graph(phases: Iterable[PhaseDef], tasks: Iterable[TaskDef]) -> TaskGraph:
    graph = TaskGraph(phases=list(phases), tasks=list(tasks))
    graph.validate()
    return graph


def load_graph(path: Path) -> TaskGraph:
    if not path.exists():
        raise InvalidDependencyError([f"Task graph file not found: {path}"])
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = tomllib.loads(text)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise InvalidDependencyError([f"Could not parse {path}: {exc}"]) from exc
    graph = TaskGraph.from_dict(data)
    graph.validate()
    return graph
