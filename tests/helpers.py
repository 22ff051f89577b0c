"""Shared test helpers."""

import threading
from datetime import datetime, timedelta
from typing import Any

from publisher.dispatch.queue import DispatchQueue
from publisher.registry.registry import AssetRegistry
from publisher.wallets.pool import WalletPool
from publisher.worker.processor import PublishWorker


class FakeClock:
    """Controllable naive-UTC clock shared by the stores under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, 0)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self.now += timedelta(seconds=seconds)
            return self.now


def wallet_definitions(count: int, blockchain: str = "otp:20430") -> list[dict[str, Any]]:
    """Distinct wallet configurations for the pool."""
    return [
        {
            "address": f"0x{index:040x}",
            "private_key": f"0x{'ab' * 31}{index:02x}",
            "blockchain": blockchain,
        }
        for index in range(1, count + 1)
    ]


def build_worker(
    registry: AssetRegistry,
    wallet_pool: WalletPool,
    dispatch: DispatchQueue,
    ledger: Any,
    worker_id: str = "worker-1",
    **kwargs: Any,
) -> PublishWorker:
    """Worker with zero requeue delays unless overridden."""
    options: dict[str, Any] = {
        "backpressure_delay": 0.0,
        "retry_backoff_base": 0.0,
        "retry_backoff_max": 0.0,
        "dequeue_timeout": 0.05,
    }
    options.update(kwargs)
    return PublishWorker(
        registry, wallet_pool, dispatch, ledger, worker_id=worker_id, **options
    )


def drain(worker: PublishWorker, limit: int = 50) -> list[Any]:
    """Process entries until the queue stays empty; return the outcomes."""
    outcomes = []
    for _ in range(limit):
        outcome = worker.process_next(timeout=0.05)
        if outcome is None:
            break
        outcomes.append(outcome)
    return outcomes
