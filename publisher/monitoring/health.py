"""Health check for the publisher service."""

from datetime import timedelta

from pydantic import BaseModel, Field

from publisher.core.config import settings
from publisher.core.errors import StoreUnavailable
from publisher.core.logging import get_logger
from publisher.dispatch.queue import DispatchQueue
from publisher.dispatch.workers import WorkerRegistry
from publisher.registry.registry import AssetRegistry
from publisher.wallets.pool import WalletPool

logger = get_logger(__name__).bind(module="health_monitor")

# Failed attempts within the last hour above which a warning is raised
RECENT_FAILURE_THRESHOLD = 10


class HealthChecks(BaseModel):
    database: bool = False
    queue: bool = False
    wallets: bool = False
    workers: bool = False


class HealthStats(BaseModel):
    stuck_publishing: int = 0
    duplicate_dispatch: int = 0
    active_workers: int = 0
    recent_failures: int = 0


class HealthStatus(BaseModel):
    """Result of a health check."""

    healthy: bool
    checks: HealthChecks = Field(default_factory=HealthChecks)
    stats: HealthStats = Field(default_factory=HealthStats)
    warnings: list[str] = Field(default_factory=list)


class HealthMonitor:
    """Checks store reachability, worker liveness and pipeline anomalies.

    The service is unhealthy when a store cannot be reached or no worker
    has sent a heartbeat within the TTL. Stuck assets, duplicate dispatch
    entries, an exhausted wallet pool and bursts of failures only produce
    warnings.
    """

    def __init__(
        self,
        registry: AssetRegistry,
        wallet_pool: WalletPool,
        dispatch: DispatchQueue,
        worker_registry: WorkerRegistry,
        worker_ttl: float | None = None,
        stuck_after: float | None = None,
    ) -> None:
        self.registry = registry
        self.wallet_pool = wallet_pool
        self.dispatch = dispatch
        self.worker_registry = worker_registry
        self.worker_ttl = worker_ttl or settings.WORKER_HEARTBEAT_TTL
        self.stuck_after = stuck_after or settings.STUCK_PUBLISHING_SECONDS

    def check(self) -> HealthStatus:
        checks = HealthChecks()
        stats = HealthStats()
        warnings: list[str] = []

        try:
            self.registry.ping()
            checks.database = True
            stats.stuck_publishing = self.registry.count_stuck(self.stuck_after)
            stats.recent_failures = self.registry.count_failed_attempts(timedelta(hours=1))
        except StoreUnavailable as e:
            warnings.append(f"Database unavailable: {e}")

        try:
            self.dispatch.ping()
            duplicates = self.dispatch.duplicate_asset_ids()
            checks.queue = True
            stats.duplicate_dispatch = len(duplicates)
        except StoreUnavailable as e:
            warnings.append(f"Dispatch queue unavailable: {e}")

        try:
            wallet_stats = self.wallet_pool.get_stats()
            checks.wallets = True
            if wallet_stats.total == 0:
                warnings.append("No wallets configured")
            elif wallet_stats.available == 0:
                warnings.append("No wallets available")
        except StoreUnavailable as e:
            warnings.append(f"Wallet store unavailable: {e}")

        try:
            stats.active_workers = len(self.worker_registry.active_workers(self.worker_ttl))
            checks.workers = stats.active_workers > 0
            if not checks.workers:
                warnings.append("No active publish workers")
        except StoreUnavailable as e:
            warnings.append(f"Worker registry unavailable: {e}")

        if stats.stuck_publishing:
            warnings.append(f"{stats.stuck_publishing} assets stuck in publishing")
        if stats.duplicate_dispatch:
            warnings.append(
                f"{stats.duplicate_dispatch} assets have duplicate dispatch entries"
            )
        if stats.recent_failures > RECENT_FAILURE_THRESHOLD:
            warnings.append(f"{stats.recent_failures} failures in last hour")

        healthy = checks.database and checks.queue and checks.wallets and checks.workers
        status = HealthStatus(healthy=healthy, checks=checks, stats=stats, warnings=warnings)
        if not healthy:
            logger.warning("Health check failed", warnings=warnings)
        return status
