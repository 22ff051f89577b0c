"""Wallet pool and lease stores."""

from publisher.wallets.pool import LeaseKeeper, WalletPool
from publisher.wallets.sql_store import SqlLeaseStore, WalletModel
from publisher.wallets.store import LeaseStore, MemoryLeaseStore
from publisher.wallets.types import (
    Wallet,
    WalletConfig,
    WalletLease,
    WalletStats,
    WalletUsage,
)

__all__ = [
    "LeaseKeeper",
    "LeaseStore",
    "MemoryLeaseStore",
    "SqlLeaseStore",
    "Wallet",
    "WalletConfig",
    "WalletLease",
    "WalletModel",
    "WalletPool",
    "WalletStats",
    "WalletUsage",
]
