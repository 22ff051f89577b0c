"""Periodic sweeps that undo the damage of crashed workers and lost hints."""

import threading

from pydantic import BaseModel, Field

from publisher.core.config import settings
from publisher.core.errors import StoreUnavailable
from publisher.core.logging import get_logger
from publisher.registry.registry import AssetRegistry
from publisher.wallets.pool import WalletPool
from publisher.worker.metrics import REAPED_LEASES, RECOVERED_ASSETS

logger = get_logger(__name__).bind(module="maintenance")


class MaintenanceReport(BaseModel):
    """Result of one maintenance pass."""

    reaped_leases: int = 0
    recovered: list[str] = Field(default_factory=list)
    resignalled: list[str] = Field(default_factory=list)


class MaintenanceLoop:
    """Runs the recovery sweeps on a fixed interval.

    Each pass frees wallets whose lease expired, returns assets stuck in
    publishing to queued and re-signals queued assets whose dispatch hint
    went missing. Every sweep is a conditional update, so several loops
    may run at once without double-moving an asset.
    """

    def __init__(
        self,
        registry: AssetRegistry,
        wallet_pool: WalletPool,
        interval: float | None = None,
        stuck_after: float | None = None,
        stale_after: float | None = None,
    ) -> None:
        self.registry = registry
        self.wallet_pool = wallet_pool
        self.interval = interval or settings.MAINTENANCE_INTERVAL
        self.stuck_after = stuck_after or settings.STUCK_PUBLISHING_SECONDS
        self.stale_after = stale_after or settings.STALE_QUEUED_SECONDS

    def run_once(self) -> MaintenanceReport:
        report = MaintenanceReport()

        report.reaped_leases = self.wallet_pool.reap_expired()
        if report.reaped_leases:
            REAPED_LEASES.inc(report.reaped_leases)

        report.recovered = self.registry.recover_stuck(self.stuck_after)
        if report.recovered:
            RECOVERED_ASSETS.labels(reason="stuck_publishing").inc(len(report.recovered))

        report.resignalled = self.registry.resignal_stale(self.stale_after)
        if report.resignalled:
            RECOVERED_ASSETS.labels(reason="resignal").inc(len(report.resignalled))

        logger.debug(
            "Maintenance pass complete",
            reaped_leases=report.reaped_leases,
            recovered=len(report.recovered),
            resignalled=len(report.resignalled),
        )
        return report

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Sweep every ``interval`` seconds until ``stop_event`` is set.

        A store outage skips the pass; the next tick tries again.
        """
        stop = stop_event or threading.Event()
        logger.info("Maintenance loop started", interval=self.interval)
        while not stop.is_set():
            try:
                self.run_once()
            except StoreUnavailable as e:
                logger.error("Maintenance pass skipped; store unavailable", error=str(e))
            stop.wait(self.interval)
        logger.info("Maintenance loop stopped")
