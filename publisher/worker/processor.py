"""Publish worker: turns dispatch entries into ledger publishes."""

import os
import socket
import threading
import time
from enum import Enum
from uuid import uuid4

from structlog.stdlib import BoundLogger

from publisher.core.config import settings
from publisher.core.errors import (
    AssetNotFound,
    IllegalTransition,
    LedgerPublishError,
    NoWalletAvailable,
    StoreUnavailable,
)
from publisher.core.logging import get_logger
from publisher.dispatch.queue import DispatchQueue
from publisher.dispatch.types import DispatchEntry
from publisher.dispatch.workers import WorkerRegistry
from publisher.ledger.base import BaseLedgerClient, PublishRequestOptions
from publisher.registry.registry import AssetRegistry
from publisher.registry.types import Asset, AssetState
from publisher.wallets.pool import WalletPool
from publisher.wallets.types import WalletLease
from publisher.worker.metrics import (
    LOST_LEASES,
    PUBLISH_DURATION,
    PUBLISH_OUTCOMES,
    PUBLISHES_IN_FLIGHT,
)

logger = get_logger(__name__).bind(module="publish_worker")

# Recorded on a successful attempt whose wallet lease could not be renewed
LEASE_LOST_NOTE = "Wallet lease lost during publish"


class ProcessOutcome(str, Enum):
    """What happened to a dispatch entry."""

    PUBLISHED = "published"
    RETRY = "retry"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    BACKPRESSURE = "backpressure"
    LOST = "lost"  # the asset changed hands while we worked on it


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class PublishWorker:
    """Control loop composing the registry, wallet pool and dispatch queue.

    For each entry: claim the asset (a lost claim means another worker has
    it, so the entry is dropped), lease a wallet (none free means the claim
    is handed back and the entry requeued, without spending an attempt),
    publish, record the outcome and always release the wallet.
    """

    def __init__(
        self,
        registry: AssetRegistry,
        wallet_pool: WalletPool,
        dispatch: DispatchQueue,
        ledger: BaseLedgerClient,
        worker_id: str | None = None,
        worker_registry: WorkerRegistry | None = None,
        backpressure_delay: float | None = None,
        retry_backoff_base: float | None = None,
        retry_backoff_max: float | None = None,
        dequeue_timeout: float | None = None,
        heartbeat_ttl: float | None = None,
    ) -> None:
        """Initialize worker.

        Args:
            registry: Asset registry
            wallet_pool: Wallet pool to lease credentials from
            dispatch: Queue of dispatch entries
            ledger: Ledger client used for publishing
            worker_id: Optional worker ID (default: host, pid and random suffix)
            worker_registry: Where liveness heartbeats are recorded
            backpressure_delay: Seconds before an entry that found no wallet
                becomes visible again
            retry_backoff_base: First retry delay after a failed publish
            retry_backoff_max: Cap on the retry delay
            dequeue_timeout: Longest single wait for an entry in ``run``
            heartbeat_ttl: Liveness window; heartbeats are sent three times
                per window
        """
        self.registry = registry
        self.wallet_pool = wallet_pool
        self.dispatch = dispatch
        self.ledger = ledger
        self.worker_id = worker_id or default_worker_id()
        self.worker_registry = worker_registry
        self.backpressure_delay = (
            settings.BACKPRESSURE_DELAY if backpressure_delay is None else backpressure_delay
        )
        self.retry_backoff_base = (
            settings.RETRY_BACKOFF_BASE if retry_backoff_base is None else retry_backoff_base
        )
        self.retry_backoff_max = (
            settings.RETRY_BACKOFF_MAX if retry_backoff_max is None else retry_backoff_max
        )
        self.dequeue_timeout = (
            settings.DEQUEUE_TIMEOUT if dequeue_timeout is None else dequeue_timeout
        )
        self.heartbeat_interval = (heartbeat_ttl or settings.WORKER_HEARTBEAT_TTL) / 3
        self._last_heartbeat = 0.0
        self.log = logger.bind(worker_id=self.worker_id)

    def retry_delay(self, attempt_count: int) -> float:
        """Exponential backoff before a failed asset is dispatched again."""
        if self.retry_backoff_base <= 0:
            return 0.0
        delay = self.retry_backoff_base * (2 ** max(0, attempt_count - 1))
        return min(delay, self.retry_backoff_max)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(
        self, stop_event: threading.Event | None = None, max_entries: int | None = None
    ) -> int:
        """Process entries until stopped.

        While the dispatch queue is paused the worker keeps heartbeating but
        takes no entries, checking the flag again every ``dequeue_timeout``.

        Args:
            stop_event: Set to stop the loop after the current entry
            max_entries: Stop after handling this many entries

        Returns:
            Number of entries handled

        Raises:
            StoreUnavailable: If a backing store goes away; the caller
                restarts the worker
        """
        stop = stop_event or threading.Event()
        handled = 0
        paused = False
        self.log.info("Publish worker started")
        self._heartbeat(force=True)
        try:
            while not stop.is_set():
                self._heartbeat()
                if self.dispatch.is_paused():
                    if not paused:
                        self.log.info("Dispatch queue paused; waiting")
                        paused = True
                    stop.wait(self.dequeue_timeout)
                    continue
                if paused:
                    self.log.info("Dispatch queue resumed")
                    paused = False
                try:
                    outcome = self.process_next(timeout=self.dequeue_timeout)
                except StoreUnavailable:
                    raise
                except Exception as e:
                    self.log.exception("Unexpected error handling dispatch entry", error=str(e))
                    continue
                if outcome is None:
                    continue
                handled += 1
                if max_entries is not None and handled >= max_entries:
                    break
        except StoreUnavailable as e:
            self.log.error("Store unavailable; stopping worker", error=str(e))
            raise
        finally:
            self._unregister()
            self.log.info("Publish worker stopped", handled=handled)
        return handled

    def _heartbeat(self, force: bool = False) -> None:
        if self.worker_registry is None:
            return
        now = time.monotonic()
        if force or now - self._last_heartbeat >= self.heartbeat_interval:
            self.worker_registry.heartbeat(self.worker_id)
            self._last_heartbeat = now

    def _unregister(self) -> None:
        if self.worker_registry is None:
            return
        try:
            self.worker_registry.unregister(self.worker_id)
        except StoreUnavailable as e:
            self.log.warning("Could not unregister worker", error=str(e))

    def process_next(self, timeout: float | None = None) -> ProcessOutcome | None:
        """Dequeue and handle one entry; ``None`` if none arrived in time."""
        entry = self.dispatch.dequeue(timeout=timeout)
        if entry is None:
            return None
        return self.process_entry(entry)

    # ------------------------------------------------------------------
    # Entry handling
    # ------------------------------------------------------------------

    def process_entry(self, entry: DispatchEntry) -> ProcessOutcome:
        """Drive one dispatch entry to an outcome and acknowledge it."""
        try:
            outcome = self._handle(entry)
        finally:
            self.dispatch.ack(entry)
        PUBLISH_OUTCOMES.labels(outcome=outcome.value).inc()
        return outcome

    def _handle(self, entry: DispatchEntry) -> ProcessOutcome:
        log = self.log.bind(asset_id=entry.asset_id, entry_id=entry.entry_id)

        claim = self.registry.mark_publishing(entry.asset_id)
        if claim is None:
            log.debug("Asset already handled elsewhere; dropping entry")
            return ProcessOutcome.DUPLICATE

        try:
            lease = self.wallet_pool.acquire(self.worker_id, timeout=0)
        except NoWalletAvailable:
            if self.registry.release_claim(entry.asset_id, claim):
                self.dispatch.requeue(entry, delay=self.backpressure_delay)
                log.debug("No wallet free; entry requeued", delay=self.backpressure_delay)
            return ProcessOutcome.BACKPRESSURE

        success = False
        try:
            outcome = self._publish(
                entry.asset_id, claim, lease, log.bind(wallet_id=lease.wallet_id)
            )
            success = outcome is ProcessOutcome.PUBLISHED
            return outcome
        finally:
            self.wallet_pool.release(lease.wallet_id, self.worker_id, success=success)

    def _publish(
        self, asset_id: str, claim: str, lease: WalletLease, log: BoundLogger
    ) -> ProcessOutcome:
        try:
            asset = self.registry.get(asset_id)
            attempt_id = self.registry.start_attempt(
                asset.id, claim, lease.wallet_id, self.worker_id
            )
        except AssetNotFound:
            log.warning("Claimed asset disappeared")
            return ProcessOutcome.LOST
        except IllegalTransition:
            log.warning("Claim was recovered before publishing started")
            return ProcessOutcome.LOST

        options = PublishRequestOptions(privacy=asset.privacy, epochs=asset.epochs)
        log.info("Publishing asset", attempt=asset.attempt_count + 1)

        started = time.monotonic()
        PUBLISHES_IN_FLIGHT.inc()
        try:
            with self.wallet_pool.keep_alive(lease) as keeper:
                result = self.ledger.publish(asset.content, lease.credential, options)
        except Exception as e:
            elapsed = time.monotonic() - started
            PUBLISH_DURATION.labels(result="error").observe(elapsed)
            error_type = (
                e.error_type if isinstance(e, LedgerPublishError) else type(e).__name__
            )
            return self._fail(asset, claim, attempt_id, str(e) or error_type, error_type, log)
        finally:
            PUBLISHES_IN_FLIGHT.dec()

        PUBLISH_DURATION.labels(result="success").observe(time.monotonic() - started)
        if keeper.lost:
            # The wallet may have been leased to another holder mid-publish
            LOST_LEASES.inc()
            log.error(
                "Wallet lease lost during publish; another holder may share the wallet",
                locator=result.locator,
            )
        self.registry.finish_attempt(
            attempt_id,
            success=True,
            locator=result.locator,
            transaction_hash=result.transaction_hash,
            error=LEASE_LOST_NOTE if keeper.lost else None,
        )
        try:
            self.registry.mark_published(
                asset.id, claim, result.locator, result.transaction_hash
            )
        except IllegalTransition:
            log.error(
                "Published, but the asset was recovered by another worker meanwhile",
                locator=result.locator,
            )
            return ProcessOutcome.LOST
        return ProcessOutcome.PUBLISHED

    def _fail(
        self,
        asset: Asset,
        claim: str,
        attempt_id: int,
        message: str,
        error_type: str,
        log: BoundLogger,
    ) -> ProcessOutcome:
        self.registry.finish_attempt(
            attempt_id, success=False, error=message, error_type=error_type
        )
        try:
            state = self.registry.mark_failed(asset.id, claim, message)
        except IllegalTransition:
            log.warning("Asset changed state while publishing; leaving it alone")
            return ProcessOutcome.LOST

        if state is AssetState.QUEUED:
            delay = self.retry_delay(asset.attempt_count + 1)
            self.dispatch.enqueue(asset.id, priority=asset.priority, delay=delay)
            log.info("Publish failed; retry scheduled", delay=delay, error=message)
            return ProcessOutcome.RETRY

        log.error("Publish failed permanently", error=message)
        return ProcessOutcome.FAILED
