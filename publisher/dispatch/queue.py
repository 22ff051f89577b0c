"""Dispatch queue: lossy, duplicate-tolerant scheduling hints for workers."""

from uuid import uuid4

from publisher.core.logging import get_logger
from publisher.dispatch.backends import (
    DispatchBackend,
    MemoryDispatchBackend,
    duplicate_asset_ids,
)
from publisher.dispatch.types import DispatchEntry, QueueStats

logger = get_logger(__name__).bind(module="dispatch_queue")


class DispatchQueue:
    """Tells workers which assets are ready.

    Entries are hints, never authoritative: the asset registry is consulted
    before acting on one, and the registry's maintenance sweeps re-issue
    hints that were lost.
    """

    def __init__(self, backend: DispatchBackend | None = None) -> None:
        self.backend = backend or MemoryDispatchBackend()

    def enqueue(self, asset_id: str, priority: int = 50, delay: float = 0.0) -> DispatchEntry:
        """Admit a hint for ``asset_id``.

        Args:
            asset_id: Asset ready for publishing
            priority: 0-100, higher is served first
            delay: Seconds before the entry becomes visible

        Returns:
            The stored entry
        """
        entry = DispatchEntry(asset_id=asset_id, priority=priority)
        self.backend.push(entry, delay=delay)
        logger.debug(
            "Enqueued dispatch entry",
            asset_id=asset_id,
            entry_id=entry.entry_id,
            priority=priority,
            delay=delay,
        )
        return entry

    def requeue(self, entry: DispatchEntry, delay: float = 0.0) -> DispatchEntry:
        """Re-issue a hint that was dequeued but could not be handled yet."""
        retry = entry.model_copy(
            update={"entry_id": uuid4().hex, "attempt": entry.attempt + 1}
        )
        self.backend.push(retry, delay=delay)
        return retry

    def dequeue(self, timeout: float | None = None) -> DispatchEntry | None:
        """Blocking pop of the next entry; ``None`` when ``timeout`` elapses."""
        return self.backend.pop(timeout=timeout)

    def ack(self, entry: DispatchEntry) -> None:
        """Mark a dequeued entry as handled."""
        self.backend.ack(entry)

    def stats(self) -> QueueStats:
        return self.backend.stats()

    def duplicate_asset_ids(self) -> list[str]:
        """Asset ids with more than one outstanding entry."""
        return duplicate_asset_ids(self.backend.outstanding())

    def ping(self) -> bool:
        return self.backend.ping()

    def pause(self) -> None:
        """Stop workers from taking new entries; entries keep accumulating."""
        self.backend.set_paused(True)
        logger.info("Dispatch queue paused")

    def resume(self) -> None:
        self.backend.set_paused(False)
        logger.info("Dispatch queue resumed")

    def is_paused(self) -> bool:
        return self.backend.is_paused()
