"""Registry of live publish workers, used by health checks."""

import threading
import time
from abc import ABC, abstractmethod

import redis

from publisher.core.errors import translate_store_errors


class WorkerRegistry(ABC):
    """Tracks which workers are alive through periodic heartbeats."""

    @abstractmethod
    def heartbeat(self, worker_id: str) -> None:
        """Record that ``worker_id`` is alive now. Also used to register."""

    @abstractmethod
    def unregister(self, worker_id: str) -> None:
        """Remove a worker that shut down cleanly."""

    @abstractmethod
    def active_workers(self, ttl: float) -> list[str]:
        """Workers whose last heartbeat is younger than ``ttl`` seconds."""

    def register(self, worker_id: str) -> None:
        self.heartbeat(worker_id)


class MemoryWorkerRegistry(WorkerRegistry):
    """Process-local worker registry."""

    def __init__(self) -> None:
        self._beats: dict[str, float] = {}
        self._lock = threading.Lock()

    def heartbeat(self, worker_id: str) -> None:
        with self._lock:
            self._beats[worker_id] = time.time()

    def unregister(self, worker_id: str) -> None:
        with self._lock:
            self._beats.pop(worker_id, None)

    def active_workers(self, ttl: float) -> list[str]:
        cutoff = time.time() - ttl
        with self._lock:
            return sorted(w for w, beat in self._beats.items() if beat >= cutoff)


class RedisWorkerRegistry(WorkerRegistry):
    """Worker registry stored in a Redis hash of worker id to last heartbeat."""

    def __init__(self, client: redis.Redis, key: str = "publisher:workers") -> None:
        self.client = client
        self.key = key

    def heartbeat(self, worker_id: str) -> None:
        with translate_store_errors("workers"):
            self.client.hset(self.key, worker_id, str(time.time()))

    def unregister(self, worker_id: str) -> None:
        with translate_store_errors("workers"):
            self.client.hdel(self.key, worker_id)

    def active_workers(self, ttl: float) -> list[str]:
        cutoff = time.time() - ttl
        with translate_store_errors("workers"):
            beats = self.client.hgetall(self.key)

        active = []
        for worker_id, beat in beats.items():
            name = worker_id.decode() if isinstance(worker_id, bytes) else worker_id
            if float(beat) >= cutoff:
                active.append(name)
        return sorted(active)
