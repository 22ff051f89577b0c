"""Wallet pool: mutual exclusion for signing credentials."""

import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Any

from publisher.core.clock import Clock, utcnow
from publisher.core.config import settings
from publisher.core.errors import NoWalletAvailable
from publisher.core.logging import get_logger
from publisher.wallets.store import LeaseStore, MemoryLeaseStore
from publisher.wallets.types import (
    Wallet,
    WalletConfig,
    WalletLease,
    WalletStats,
    WalletUsage,
)

logger = get_logger(__name__).bind(module="wallet_pool")


class WalletPool:
    """Hands out time-bounded leases on a fixed set of wallets.

    A worker must hold an unexpired lease for the whole ledger call that
    uses the wallet, so each credential signs at most one transaction at a
    time. A holder that crashes keeps its wallet for at most
    ``lease_duration``; ``reap_expired`` then frees it.
    """

    def __init__(
        self,
        store: LeaseStore | None = None,
        lease_duration: float | None = None,
        acquire_timeout: float | None = None,
        poll_interval: float | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize pool.

        Args:
            store: Lease persistence (in-memory when omitted)
            lease_duration: Lease length in seconds
            acquire_timeout: Default seconds ``acquire`` waits for a wallet
            poll_interval: Seconds between acquisition retries while waiting
            clock: Source of naive UTC timestamps
        """
        self.store = store or MemoryLeaseStore()
        self.lease_duration = timedelta(
            seconds=lease_duration or settings.WALLET_LEASE_SECONDS
        )
        self.acquire_timeout = (
            settings.WALLET_ACQUIRE_TIMEOUT if acquire_timeout is None else acquire_timeout
        )
        self.poll_interval = poll_interval or settings.WALLET_ACQUIRE_POLL_INTERVAL
        self.clock = clock

    def configure(self, wallets: Iterable[WalletConfig | dict[str, Any]]) -> list[Wallet]:
        """Install the wallet set used for publishing.

        Args:
            wallets: Wallet definitions with address, private key and chain

        Returns:
            Active wallets
        """
        configs = [
            w if isinstance(w, WalletConfig) else WalletConfig.model_validate(w)
            for w in wallets
        ]
        addresses = [c.address for c in configs]
        if len(set(addresses)) != len(addresses):
            raise ValueError("Wallet addresses must be unique")

        active = self.store.configure(configs)
        logger.info("Wallet pool configured", wallets=len(active))
        return active

    def acquire(self, holder_id: str, timeout: float | None = None) -> WalletLease:
        """Lease a free wallet to ``holder_id``.

        Args:
            holder_id: Identity of the worker taking the lease
            timeout: Seconds to keep trying; the pool default when None

        Returns:
            The new lease

        Raises:
            NoWalletAvailable: If every wallet stays leased until the deadline
        """
        wait = self.acquire_timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        while True:
            now = self.clock()
            lease = self.store.try_acquire(holder_id, now, now + self.lease_duration)
            if lease is not None:
                logger.debug(
                    "Wallet leased",
                    wallet_id=lease.wallet_id,
                    holder_id=holder_id,
                    expires_at=lease.expires_at.isoformat(),
                )
                return lease
            if time.monotonic() >= deadline:
                raise NoWalletAvailable(f"No wallet available for {holder_id}")
            time.sleep(min(self.poll_interval, max(0.0, deadline - time.monotonic())))

    def release(
        self, wallet_id: int, holder_id: str, success: bool | None = None
    ) -> bool:
        """Give a wallet back. Idempotent.

        Args:
            wallet_id: Leased wallet
            holder_id: Lease owner
            success: Outcome of the publish, recorded in usage counters

        Returns:
            True if the lease existed and belonged to ``holder_id``
        """
        released = self.store.release(wallet_id, holder_id, self.clock(), success)
        if not released:
            logger.debug(
                "Release ignored; lease already gone",
                wallet_id=wallet_id,
                holder_id=holder_id,
            )
        return released

    def renew(self, wallet_id: int, holder_id: str) -> WalletLease | None:
        """Push an unexpired lease's expiry to ``now + lease_duration``."""
        now = self.clock()
        return self.store.renew(wallet_id, holder_id, now, now + self.lease_duration)

    def reap_expired(self) -> int:
        """Free wallets whose lease expired (holder crashed or hung)."""
        reaped = self.store.reap_expired(self.clock())
        if reaped:
            logger.warning("Reaped expired wallet leases", count=reaped)
        return reaped

    def get_stats(self) -> WalletStats:
        return self.store.stats(self.clock())

    def get_usage(self) -> list[WalletUsage]:
        return self.store.usage()

    def ping(self) -> bool:
        return self.store.ping()

    @contextmanager
    def lease(self, holder_id: str, timeout: float | None = None) -> Iterator[WalletLease]:
        """Hold a wallet for the duration of the block."""
        lease = self.acquire(holder_id, timeout=timeout)
        try:
            yield lease
        finally:
            self.release(lease.wallet_id, holder_id)

    @contextmanager
    def keep_alive(
        self, lease: WalletLease, interval: float | None = None
    ) -> Iterator["LeaseKeeper"]:
        """Renew ``lease`` in the background while the block runs.

        Yields the keeper; its ``lost`` flag is set once a renewal finds the
        lease gone.
        """
        keeper = LeaseKeeper(self, lease, interval)
        keeper.start()
        try:
            yield keeper
        finally:
            keeper.stop()


class LeaseKeeper(threading.Thread):
    """Background renewal of one lease during a long publish."""

    def __init__(
        self, pool: WalletPool, lease: WalletLease, interval: float | None = None
    ) -> None:
        super().__init__(name=f"lease-keeper-{lease.wallet_id}", daemon=True)
        self.pool = pool
        self.lease = lease
        self.interval = interval or pool.lease_duration.total_seconds() / 3
        self._stopped = threading.Event()
        self.lost = False

    def run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                renewed = self.pool.renew(self.lease.wallet_id, self.lease.holder_id)
            except Exception as e:
                logger.error(
                    "Lease renewal failed",
                    wallet_id=self.lease.wallet_id,
                    error=str(e),
                )
                continue
            if renewed is None:
                self.lost = True
                logger.error(
                    "Lease lost during publish",
                    wallet_id=self.lease.wallet_id,
                    holder_id=self.lease.holder_id,
                )
                return

    def stop(self) -> None:
        self._stopped.set()
        self.join(timeout=self.interval)
