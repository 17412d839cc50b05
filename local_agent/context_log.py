"""
Terminal history for the session.

Every command run by the executor leaves a fixed sequence of entries here
(command, output, error, no-output marker, separator). Observers subscribe and
receive the *whole* history as an immutable tuple after each change.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import List, Tuple

logger = logging.getLogger(__name__)

OUTPUT_PREFIX = "Output:"
ERROR_PREFIX = "Error:"
NO_OUTPUT = "(No output)"
SEPARATOR = "___"


@dataclass(frozen=True)
class TerminalEntry:
    command: str
    output: str = ""
    is_error: bool = False
    timestamp: float = field(default_factory=time.monotonic)


Snapshot = Tuple[TerminalEntry, ...]


class HistoryLog:
    def __init__(self) -> None:
        self._entries: List[TerminalEntry] = []
        self._lock = threading.Lock()
        self._subscribers: List[queue.Queue] = []

    def subscribe(self) -> "queue.Queue[Snapshot]":
        """Return a queue fed with a full snapshot now and after every change."""
        q: queue.Queue = queue.Queue()
        with self._lock:
            self._subscribers.append(q)
            q.put(tuple(self._entries))
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def append(self, command: str, output: str = "", is_error: bool = False) -> TerminalEntry:
        entry = TerminalEntry(command, output, is_error)
        with self._lock:
            self._entries.append(entry)
            self._publish()
        return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._publish()
        logger.debug("Command history cleared.")

    def snapshot(self) -> Snapshot:
        with self._lock:
            return tuple(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _publish(self) -> None:
        # Caller holds the lock, so subscribers see snapshots in mutation order.
        snap = tuple(self._entries)
        for q in self._subscribers:
            q.put(snap)
