"""Aggregate read-only views over the publishing pipeline."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from publisher.core.clock import as_naive_utc, utcnow
from publisher.core.config import settings
from publisher.core.logging import get_logger
from publisher.dispatch.queue import DispatchQueue
from publisher.dispatch.types import QueueStats
from publisher.dispatch.workers import WorkerRegistry
from publisher.registry.registry import AssetRegistry
from publisher.registry.types import AssetState
from publisher.wallets.pool import WalletPool
from publisher.wallets.types import WalletStats, WalletUsage
from publisher.worker.metrics import (
    ACTIVE_WORKERS,
    ASSETS_BY_STATUS,
    DISPATCH_ENTRIES,
    WALLETS,
)

logger = get_logger(__name__).bind(module="metrics_reporter")

IN_PROGRESS_STATES = (AssetState.PENDING, AssetState.QUEUED, AssetState.PUBLISHING)


def success_rate(counts: dict[str, int]) -> float:
    """Published assets as a percentage of all assets."""
    total = sum(counts.values())
    if total == 0:
        return 0.0
    return counts.get(AssetState.PUBLISHED.value, 0) / total * 100


class AssetMetrics(BaseModel):
    """Status breakdown over a set of assets."""

    total_assets: int
    published_assets: int
    failed_assets: int
    in_progress_assets: int
    success_rate: float
    by_status: dict[str, int]

    @classmethod
    def from_counts(cls, counts: dict[str, int], **extra: Any) -> "AssetMetrics":
        return cls(
            total_assets=sum(counts.values()),
            published_assets=counts[AssetState.PUBLISHED.value],
            failed_assets=counts[AssetState.FAILED.value],
            in_progress_assets=sum(counts[state.value] for state in IN_PROGRESS_STATES),
            success_rate=success_rate(counts),
            by_status=counts,
            **extra,
        )


class SourceMetrics(AssetMetrics):
    """Publishing progress of one submission source."""

    source: str


class PublishingMetrics(AssetMetrics):
    """Publishing progress of assets created within an optional window."""

    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    average_publish_seconds: float


class HourlyStats(BaseModel):
    hour: datetime
    total: int
    published: int
    failed: int


class PriorityMetrics(BaseModel):
    """How one priority level fares from queue to ledger."""

    priority: int
    total: int
    published: int
    average_seconds_to_publish: Optional[float] = None
    success_rate: float


class PipelineSnapshot(BaseModel):
    """Point-in-time view of the whole pipeline."""

    assets: dict[str, int]
    total_assets: int
    success_rate: float
    average_publish_seconds: float
    wallets: WalletStats
    queue: QueueStats
    queue_paused: bool = False
    active_workers: int
    timestamp: datetime = Field(default_factory=utcnow)


class MetricsReporter:
    """Builds snapshots from the stores and mirrors them into Prometheus gauges."""

    def __init__(
        self,
        registry: AssetRegistry,
        wallet_pool: WalletPool,
        dispatch: DispatchQueue,
        worker_registry: WorkerRegistry,
        worker_ttl: float | None = None,
    ) -> None:
        self.registry = registry
        self.wallet_pool = wallet_pool
        self.dispatch = dispatch
        self.worker_registry = worker_registry
        self.worker_ttl = worker_ttl or settings.WORKER_HEARTBEAT_TTL

    def snapshot(self) -> PipelineSnapshot:
        """Collect counts by status, wallet and queue stats and worker liveness.

        Raises:
            StoreUnavailable: If any store cannot be read
        """
        counts = self.registry.get_counts_by_status()
        snapshot = PipelineSnapshot(
            assets=counts,
            total_assets=sum(counts.values()),
            success_rate=success_rate(counts),
            average_publish_seconds=self.registry.average_publish_seconds(),
            wallets=self.wallet_pool.get_stats(),
            queue=self.dispatch.stats(),
            queue_paused=self.dispatch.is_paused(),
            active_workers=len(self.worker_registry.active_workers(self.worker_ttl)),
        )
        self.refresh_gauges(snapshot)
        return snapshot

    def refresh_gauges(self, snapshot: PipelineSnapshot) -> None:
        for status, count in snapshot.assets.items():
            ASSETS_BY_STATUS.labels(status=status).set(count)
        WALLETS.labels(state="total").set(snapshot.wallets.total)
        WALLETS.labels(state="available").set(snapshot.wallets.available)
        WALLETS.labels(state="locked").set(snapshot.wallets.locked)
        DISPATCH_ENTRIES.labels(state="waiting").set(snapshot.queue.waiting)
        DISPATCH_ENTRIES.labels(state="active").set(snapshot.queue.active)
        DISPATCH_ENTRIES.labels(state="delayed").set(snapshot.queue.delayed)
        ACTIVE_WORKERS.set(snapshot.active_workers)

    def source_metrics(self, source: str) -> SourceMetrics:
        counts = self.registry.get_source_counts(source)
        return SourceMetrics.from_counts(counts, source=source)

    def publishing_metrics(
        self,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
    ) -> PublishingMetrics:
        """Status breakdown of assets created within the window.

        Either bound may be omitted; aware bounds are converted to UTC.
        Raises ValueError when the window is inverted.
        """
        created_from = as_naive_utc(created_from)
        created_to = as_naive_utc(created_to)
        if created_from and created_to and created_from > created_to:
            raise ValueError("created_from must not be after created_to")
        counts = self.registry.get_counts_by_status(created_from, created_to)
        return PublishingMetrics.from_counts(
            counts,
            created_from=created_from,
            created_to=created_to,
            average_publish_seconds=self.registry.average_publish_seconds(),
        )

    def hourly_stats(self, hours: int = 24) -> list[HourlyStats]:
        if hours < 1:
            raise ValueError("hours must be at least 1")
        return [HourlyStats(**row) for row in self.registry.get_hourly_counts(hours)]

    def priority_metrics(self) -> list[PriorityMetrics]:
        return [
            PriorityMetrics(
                **row,
                success_rate=row["published"] / row["total"] * 100 if row["total"] else 0.0,
            )
            for row in self.registry.get_priority_breakdown()
        ]

    def wallet_usage(self) -> list[WalletUsage]:
        return self.wallet_pool.get_usage()

    def error_distribution(self) -> list[dict[str, Any]]:
        return self.registry.get_error_distribution()
