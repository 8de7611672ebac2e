from phasegate.ledger.events import LedgerEvent
from phasegate.ledger.state import LedgerState, PhaseStatus, TaskStatus, fold
from phasegate.ledger.store import (
    CoordinationLedger,
    EventStore,
    JsonlEventStore,
    MemoryEventStore,
    open_ledger,
)

__all__ = [
    "CoordinationLedger",
    "EventStore",
    "JsonlEventStore",
    "LedgerEvent",
    "LedgerState",
    "MemoryEventStore",
    "PhaseStatus",
    "TaskStatus",
    "fold",
    "open_ledger",
]
