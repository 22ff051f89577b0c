"""Dispatch backend contract and the in-memory implementation."""

import heapq
import itertools
import threading
import time
from abc import ABC, abstractmethod
from collections import Counter

from publisher.dispatch.types import DispatchEntry, QueueStats

MAX_PRIORITY = 100


class DispatchBackend(ABC):
    """Storage for dispatch entries.

    Implementations order waiting entries by descending priority with FIFO
    tie-break and keep delayed entries invisible until they are due.
    """

    @abstractmethod
    def push(self, entry: DispatchEntry, delay: float = 0.0) -> None:
        """Store an entry, visible now or after ``delay`` seconds."""

    @abstractmethod
    def pop(self, timeout: float | None = None) -> DispatchEntry | None:
        """Remove and return the next due entry, blocking up to ``timeout``.

        ``None`` blocks until an entry is available. The returned entry is
        tracked as active until it is acknowledged.
        """

    @abstractmethod
    def ack(self, entry: DispatchEntry) -> None:
        """Forget an active entry."""

    @abstractmethod
    def stats(self) -> QueueStats:
        """Count waiting, active and delayed entries."""

    @abstractmethod
    def outstanding(self) -> list[DispatchEntry]:
        """All waiting, delayed and active entries."""

    @abstractmethod
    def set_paused(self, paused: bool) -> None:
        """Raise or clear the operator pause flag."""

    @abstractmethod
    def is_paused(self) -> bool:
        """Whether workers should hold off dequeueing."""

    def ping(self) -> bool:
        """Check the backend is reachable."""
        return True

    def close(self) -> None:
        """Release backend resources."""


class MemoryDispatchBackend(DispatchBackend):
    """Process-local dispatch backend for tests and single-process runs."""

    def __init__(self) -> None:
        self._waiting: list[tuple[int, int, DispatchEntry]] = []
        self._delayed: list[tuple[float, int, DispatchEntry]] = []
        self._active: dict[str, DispatchEntry] = {}
        self._sequence = itertools.count()
        self._cond = threading.Condition()
        self._paused = False

    def push(self, entry: DispatchEntry, delay: float = 0.0) -> None:
        with self._cond:
            if delay > 0:
                heapq.heappush(
                    self._delayed, (time.monotonic() + delay, next(self._sequence), entry)
                )
            else:
                self._push_waiting(entry)
            self._cond.notify_all()

    def _push_waiting(self, entry: DispatchEntry) -> None:
        heapq.heappush(
            self._waiting,
            (MAX_PRIORITY - entry.priority, next(self._sequence), entry),
        )

    def _promote_due(self) -> float | None:
        """Move due delayed entries to waiting; return seconds to the next one."""
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, entry = heapq.heappop(self._delayed)
            self._push_waiting(entry)
        if self._delayed:
            return self._delayed[0][0] - now
        return None

    def pop(self, timeout: float | None = None) -> DispatchEntry | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due()
                if self._waiting:
                    _, _, entry = heapq.heappop(self._waiting)
                    self._active[entry.entry_id] = entry
                    return entry

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def ack(self, entry: DispatchEntry) -> None:
        with self._cond:
            self._active.pop(entry.entry_id, None)

    def stats(self) -> QueueStats:
        with self._cond:
            self._promote_due()
            return QueueStats(
                waiting=len(self._waiting),
                active=len(self._active),
                delayed=len(self._delayed),
            )

    def outstanding(self) -> list[DispatchEntry]:
        with self._cond:
            entries = [item[2] for item in self._waiting]
            entries.extend(item[2] for item in self._delayed)
            entries.extend(self._active.values())
            return entries

    def set_paused(self, paused: bool) -> None:
        with self._cond:
            self._paused = paused
            self._cond.notify_all()

    def is_paused(self) -> bool:
        return self._paused


def duplicate_asset_ids(entries: list[DispatchEntry]) -> list[str]:
    """Asset ids that appear in more than one entry."""
    counts = Counter(entry.asset_id for entry in entries)
    return sorted(asset_id for asset_id, count in counts.items() if count > 1)
