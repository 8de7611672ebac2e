from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from phasegate.config import LedgerConfig
from phasegate.errors import LedgerError, StaleWriteError
from phasegate.graph import TaskGraph
from phasegate.ledger import events as ev
from phasegate.ledger.state import LedgerState, apply_event, fold

logger = logging.getLogger(__name__)


def _archive_name(head: int) -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S%f")
    return f"ledger-{stamp}-seq{head}.jsonl"


class EventStore(ABC):
    @abstractmethod
    def head(self) -> int:
        """Sequence number of the last stored event (0 when empty)."""

    @abstractmethod
    def read(self, after: int = 0) -> list[ev.LedgerEvent]:
        """Events with ``sequence > after`` in sequence order."""

    @abstractmethod
    def append(self, event: ev.LedgerEvent, expected_head: int) -> None:
        """Store ``event`` iff the current head equals ``expected_head``."""

    @abstractmethod
    def archive(self, directory: Path) -> Path:
        """Copy the log into ``directory`` and return the archive path."""


class MemoryEventStore(EventStore):
    def __init__(self) -> None:
        self._events: list[ev.LedgerEvent] = []
        self._lock = threading.Lock()

    def head(self) -> int:
        with self._lock:
            return len(self._events)

    def read(self, after: int = 0) -> list[ev.LedgerEvent]:
        with self._lock:
            return list(self._events[max(0, after):])

    def append(self, event: ev.LedgerEvent, expected_head: int) -> None:
        with self._lock:
            actual = len(self._events)
            if actual != expected_head:
                raise StaleWriteError(expected_head, actual)
            if event.sequence != actual + 1:
                raise LedgerError(f"Event sequence {event.sequence} does not follow head {actual}.")
            self._events.append(event)

    def archive(self, directory: Path) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        with self._lock:
            target = directory / _archive_name(len(self._events))
            lines = [json.dumps(item.to_dict(), ensure_ascii=False) for item in self._events]
        target.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        return target


class JsonlEventStore(EventStore):
    """One JSON event per line; appends are guarded by an O_EXCL lock file."""

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.path = path.resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout_seconds = lock_timeout_seconds
        self._thread_lock = threading.RLock()
        self._events: list[ev.LedgerEvent] = []
        self._offset = 0

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise LedgerError(
                        f"Timed out waiting for ledger lock {self.lock_file}."
                    ) from exc
                time.sleep(0.01)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _refresh(self) -> None:
        if not self.path.exists():
            return
        with self.path.open("rb") as handle:
            handle.seek(self._offset)
            chunk = handle.read()
        if not chunk:
            return
        # a trailing partial line belongs to an append still in flight
        complete, _, _partial = chunk.rpartition(b"\n")
        if not complete and not chunk.endswith(b"\n"):
            return
        consumed = len(complete) + 1
        try:
            text = complete.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise LedgerError(f"Ledger {self.path} holds bytes that are not UTF-8.") from exc
        for raw_line in text.splitlines():
            if not raw_line.strip():
                continue
            try:
                payload = json.loads(raw_line)
            except json.JSONDecodeError as exc:
                raise LedgerError(f"Corrupt ledger line in {self.path}: {raw_line[:120]}") from exc
            event = ev.LedgerEvent.from_dict(payload)
            if event.sequence != len(self._events) + 1:
                raise LedgerError(
                    f"Ledger {self.path} is out of order at sequence {event.sequence}."
                )
            self._events.append(event)
        self._offset += consumed

    def head(self) -> int:
        with self._thread_lock:
            self._refresh()
            return len(self._events)

    def read(self, after: int = 0) -> list[ev.LedgerEvent]:
        with self._thread_lock:
            self._refresh()
            return list(self._events[max(0, after):])

    def append(self, event: ev.LedgerEvent, expected_head: int) -> None:
        with self._thread_lock, self._file_lock():
            self._refresh()
            actual = len(self._events)
            if actual != expected_head:
                raise StaleWriteError(expected_head, actual)
            if event.sequence != actual + 1:
                raise LedgerError(f"Event sequence {event.sequence} does not follow head {actual}.")
            line = json.dumps(event.to_dict(), ensure_ascii=False, separators=(",", ":")) + "\n"
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())
            self._refresh()

    def archive(self, directory: Path) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        with self._thread_lock, self._file_lock():
            self._refresh()
            target = directory / _archive_name(len(self._events))
            if self.path.exists():
                shutil.copy2(self.path, target)
            else:
                target.write_text("", encoding="utf-8")
        return target


class CoordinationLedger:
    """Append-only event log plus the snapshot folded from it."""

    def __init__(self, graph: TaskGraph, store: EventStore | None = None) -> None:
        graph.validate()
        self.graph = graph
        self.store = store or MemoryEventStore()
        self._lock = threading.RLock()
        self._state = LedgerState.initial(graph)

    def _current(self) -> LedgerState:
        with self._lock:
            for event in self.store.read(after=self._state.sequence):
                apply_event(self._state, event, self.graph)
            return self._state

    @property
    def head(self) -> int:
        return self.store.head()

    def snapshot(self) -> LedgerState:
        with self._lock:
            return self._current().copy()

    def append(self, event: ev.LedgerEvent, expected_sequence: int | None = None) -> int:
        """Append ``event`` and return its sequence.

        With ``expected_sequence`` the write is conditional: if the ledger head
        has moved past it, ``StaleWriteError`` is raised and the caller must
        re-read the snapshot before retrying. Without it the write goes on top of
        whatever the head is.
        """
        if event.type not in ev.EVENT_TYPES:
            raise LedgerError(f"Unknown ledger event type: {event.type}")
        while True:
            with self._lock:
                state = self._current()
                if expected_sequence is not None and state.sequence != expected_sequence:
                    logger.debug(
                        "stale append of %s: expected %s, head %s",
                        event.type, expected_sequence, state.sequence,
                    )
                    raise StaleWriteError(expected_sequence, state.sequence)
                candidate = event.with_sequence(state.sequence + 1)
                trial = state.copy()
                apply_event(trial, candidate, self.graph)
                try:
                    self.store.append(candidate, expected_head=state.sequence)
                except StaleWriteError:
                    if expected_sequence is not None:
                        raise
                    logger.debug("append of %s lost a race; refolding", event.type)
                    continue
                self._state = trial
                return candidate.sequence

    def events(self, after: int = 0) -> list[ev.LedgerEvent]:
        return self.store.read(after=after)

    def replay_from(self, sequence: int = 0, base: LedgerState | None = None) -> LedgerState:
        if base is None:
            base = self.state_at(sequence)
        elif base.sequence != sequence:
            raise LedgerError(
                f"Replay base is at sequence {base.sequence}, not {sequence}."
            )
        return fold(self.graph, self.store.read(after=sequence), base=base)

    def state_at(self, sequence: int) -> LedgerState:
        return fold(self.graph, [item for item in self.store.read() if item.sequence <= sequence])

    def archive(self, directory: Path, *, at: float | None = None) -> Path:
        target = self.store.archive(directory)
        self.append(ev.run_archived(str(target), at=time.time() if at is None else at))
        logger.info("archived ledger to %s", target)
        return target


def open_ledger(graph: TaskGraph, config: LedgerConfig, root: Path) -> CoordinationLedger:
    if config.backend == "memory":
        return CoordinationLedger(graph, MemoryEventStore())
    path = Path(config.path)
    if not path.is_absolute():
        path = root / path
    store = JsonlEventStore(path, lock_timeout_seconds=float(config.lock_timeout_seconds))
    return CoordinationLedger(graph, store)
