"""Lease store contract and the in-memory implementation."""

import threading
from abc import ABC, abstractmethod
from datetime import datetime

from publisher.wallets.types import (
    Wallet,
    WalletConfig,
    WalletLease,
    WalletStats,
    WalletUsage,
)


class LeaseStore(ABC):
    """Persistence for wallets and their leases.

    ``try_acquire``, ``release``, ``renew`` and ``reap_expired`` must each
    be atomic with respect to every other caller of the same store, across
    processes for durable stores.
    """

    @abstractmethod
    def configure(self, wallets: list[WalletConfig]) -> list[Wallet]:
        """Install the wallet set, deactivating wallets not in it."""

    @abstractmethod
    def wallets(self) -> list[Wallet]:
        """Active wallets ordered by id."""

    @abstractmethod
    def try_acquire(
        self, holder_id: str, now: datetime, expires_at: datetime
    ) -> WalletLease | None:
        """Lease one unleased (or expired) wallet to ``holder_id``."""

    @abstractmethod
    def release(
        self, wallet_id: int, holder_id: str, now: datetime, success: bool | None
    ) -> bool:
        """Drop the lease if ``holder_id`` owns it; True when it did."""

    @abstractmethod
    def renew(
        self, wallet_id: int, holder_id: str, now: datetime, expires_at: datetime
    ) -> WalletLease | None:
        """Extend an unexpired lease owned by ``holder_id``."""

    @abstractmethod
    def reap_expired(self, now: datetime) -> int:
        """Delete expired leases; return how many were removed."""

    @abstractmethod
    def stats(self, now: datetime) -> WalletStats:
        """Count active, available and locked wallets."""

    @abstractmethod
    def usage(self) -> list[WalletUsage]:
        """Usage counters per active wallet."""

    def ping(self) -> bool:
        return True


class MemoryLeaseStore(LeaseStore):
    """Process-local lease table. Selection is round-robin by wallet id."""

    def __init__(self) -> None:
        self._wallets: dict[int, Wallet] = {}
        self._leases: dict[int, WalletLease] = {}
        self._usage: dict[int, WalletUsage] = {}
        self._cursor = 0
        self._next_id = 1
        self._lock = threading.Lock()

    def configure(self, wallets: list[WalletConfig]) -> list[Wallet]:
        with self._lock:
            by_address = {w.address: w for w in self._wallets.values()}
            wanted = {config.address for config in wallets}
            for wallet in self._wallets.values():
                wallet.is_active = wallet.address in wanted
            for config in wallets:
                existing = by_address.get(config.address)
                if existing is not None:
                    existing.private_key = config.private_key
                    existing.blockchain = config.blockchain
                    continue
                wallet = Wallet(
                    id=self._next_id,
                    address=config.address,
                    private_key=config.private_key,
                    blockchain=config.blockchain,
                )
                self._wallets[wallet.id] = wallet
                self._usage[wallet.id] = WalletUsage(
                    wallet_id=wallet.id, address=wallet.address
                )
                self._next_id += 1
            return self._active()

    def _active(self) -> list[Wallet]:
        return [w for _, w in sorted(self._wallets.items()) if w.is_active]

    def wallets(self) -> list[Wallet]:
        with self._lock:
            return self._active()

    def _is_free(self, wallet_id: int, now: datetime) -> bool:
        lease = self._leases.get(wallet_id)
        return lease is None or lease.is_expired(now)

    def try_acquire(
        self, holder_id: str, now: datetime, expires_at: datetime
    ) -> WalletLease | None:
        with self._lock:
            active = self._active()
            if not active:
                return None
            # Start just after the wallet handed out last
            start = next(
                (i for i, w in enumerate(active) if w.id > self._cursor), 0
            )
            for offset in range(len(active)):
                wallet = active[(start + offset) % len(active)]
                if self._is_free(wallet.id, now):
                    lease = WalletLease(
                        wallet_id=wallet.id,
                        holder_id=holder_id,
                        acquired_at=now,
                        expires_at=expires_at,
                        wallet=wallet,
                    )
                    self._leases[wallet.id] = lease
                    self._cursor = wallet.id
                    return lease
            return None

    def release(
        self, wallet_id: int, holder_id: str, now: datetime, success: bool | None
    ) -> bool:
        with self._lock:
            lease = self._leases.get(wallet_id)
            if lease is None or lease.holder_id != holder_id:
                return False
            del self._leases[wallet_id]
            usage = self._usage[wallet_id]
            usage.last_used_at = now
            if success is not None:
                usage.total_uses += 1
                if success:
                    usage.successful_uses += 1
                else:
                    usage.failed_uses += 1
            return True

    def renew(
        self, wallet_id: int, holder_id: str, now: datetime, expires_at: datetime
    ) -> WalletLease | None:
        with self._lock:
            lease = self._leases.get(wallet_id)
            if lease is None or lease.holder_id != holder_id or lease.is_expired(now):
                return None
            renewed = lease.model_copy(update={"expires_at": expires_at})
            self._leases[wallet_id] = renewed
            return renewed

    def reap_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [wid for wid, lease in self._leases.items() if lease.is_expired(now)]
            for wallet_id in expired:
                del self._leases[wallet_id]
            return len(expired)

    def stats(self, now: datetime) -> WalletStats:
        with self._lock:
            active = self._active()
            locked = sum(1 for w in active if not self._is_free(w.id, now))
            return WalletStats(
                total=len(active), available=len(active) - locked, locked=locked
            )

    def usage(self) -> list[WalletUsage]:
        with self._lock:
            return [
                self._usage[w.id].model_copy(update={"locked": w.id in self._leases})
                for w in self._active()
            ]
