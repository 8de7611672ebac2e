from __future__ import annotations

from typing import Any


class PhasegateError(RuntimeError):
    """Base class for orchestrator errors."""


class LedgerError(PhasegateError):
    """Raised when ledger storage operations fail."""


class StaleWriteError(LedgerError):
    """Raised when an append races with another writer."""

    def __init__(self, expected_sequence: int, actual_sequence: int) -> None:
        super().__init__(
            f"Stale ledger write: expected head {expected_sequence}, found {actual_sequence}."
        )
        self.expected_sequence = expected_sequence
        self.actual_sequence = actual_sequence


class ConfigError(PhasegateError):
    """Raised for invalid configuration values."""


class InvalidDependencyError(PhasegateError):
    """Raised once at graph load time; the orchestrator must not start."""

    def __init__(self, problems: list[str]) -> None:
        details = "\n".join(f"- {item}" for item in problems)
        super().__init__(f"Invalid task graph:\n{details}")
        self.problems = list(problems)


class GateDeniedError(PhasegateError):
    def __init__(self, phase_id: str, unmet: list[Any]) -> None:
        reasons = ", ".join(str(item) for item in unmet) or "phase not open"
        super().__init__(f"Phase '{phase_id}' is not admitted: {reasons}")
        self.phase_id = phase_id
        self.unmet = list(unmet)


class LeaseExpiredError(PhasegateError):
    def __init__(self, task_id: str, worker_id: str, detail: str = "") -> None:
        message = f"Worker '{worker_id}' no longer holds the lease on task '{task_id}'."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)
        self.task_id = task_id
        self.worker_id = worker_id


class TerminalFailureError(PhasegateError):
    def __init__(self, task_id: str, last_error: str, attempt: int) -> None:
        super().__init__(
            f"Task '{task_id}' failed terminally after {attempt} attempt(s): {last_error}"
        )
        self.task_id = task_id
        self.last_error = last_error
        self.attempt = attempt


class SchedulerError(PhasegateError):
    """Raised for invalid scheduler requests (unknown task, bad transition)."""
