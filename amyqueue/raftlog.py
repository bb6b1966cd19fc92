"""The in-memory replicated Raft log."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable


class CommandType(IntEnum):
    """Tags a log entry so the state machine knows how to apply it."""

    DATA = 0
    MEMBERSHIP = 1


@dataclass(frozen=True)
class LogEntry:
    """One entry of the replicated log."""

    index: int
    term: int
    type: CommandType = CommandType.DATA
    command: bytes = b""


class RaftLog:
    """A thread-safe log whose index 0 is a term-0 sentinel; real entries start at 1."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: list[LogEntry] = [LogEntry(index=0, term=0)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def last_index(self) -> int:
        with self._lock:
            return len(self._entries) - 1

    def last_term(self) -> int:
        with self._lock:
            return self._entries[-1].term

    def entry(self, index: int) -> LogEntry | None:
        """The entry at index, or None if there is none."""
        with self._lock:
            if 0 <= index < len(self._entries):
                return self._entries[index]
            return None

    def entries_from(self, index: int) -> list[LogEntry]:
        """A copy of the entries from index (inclusive) to the end."""
        with self._lock:
            if index < 0 or index >= len(self._entries):
                return []
            return self._entries[index:]

    def append(self, prev_index: int, entries: Iterable[LogEntry]) -> None:
        """Drop everything after prev_index, then append the given entries."""
        with self._lock:
            if not 0 <= prev_index < len(self._entries):
                raise IndexError(
                    f"prev_index {prev_index} outside log of last index {len(self._entries) - 1}"
                )
            del self._entries[prev_index + 1 :]
            self._entries.extend(entries)

    def append_one(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)