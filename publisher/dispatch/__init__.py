"""Dispatch queue for publish workers."""

from publisher.dispatch.backends import DispatchBackend, MemoryDispatchBackend
from publisher.dispatch.queue import DispatchQueue
from publisher.dispatch.redis_backend import RedisDispatchBackend
from publisher.dispatch.types import DispatchEntry, QueueStats
from publisher.dispatch.workers import (
    MemoryWorkerRegistry,
    RedisWorkerRegistry,
    WorkerRegistry,
)

__all__ = [
    "DispatchBackend",
    "DispatchEntry",
    "DispatchQueue",
    "MemoryDispatchBackend",
    "MemoryWorkerRegistry",
    "QueueStats",
    "RedisDispatchBackend",
    "RedisWorkerRegistry",
    "WorkerRegistry",
]
