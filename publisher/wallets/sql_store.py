"""Durable lease store backed by the wallets table.

Each lease operation is one conditional ``UPDATE`` on the wallet row, so
the database serialises competing workers on different hosts. Wallets are
handed out least recently used first, ties broken by id.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.orm import Session, sessionmaker

from publisher.core.clock import utcnow
from publisher.core.db import Base
from publisher.core.errors import translate_store_errors
from publisher.wallets.store import LeaseStore
from publisher.wallets.types import (
    Wallet,
    WalletConfig,
    WalletLease,
    WalletStats,
    WalletUsage,
)


class WalletModel(Base):
    """Wallet pool row; the lease columns are the lock."""

    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(42), nullable=False, unique=True)
    private_key = Column(Text, nullable=False)
    blockchain = Column(String(50), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # Lease
    holder_id = Column(String(100), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    # Usage
    last_used_at = Column(DateTime, nullable=True)
    total_uses = Column(Integer, nullable=False, default=0)
    successful_uses = Column(Integer, nullable=False, default=0)
    failed_uses = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_wallets_available", "is_active", "holder_id", "last_used_at"),
    )


def _free(now: datetime):  # type: ignore[no-untyped-def]
    return or_(WalletModel.holder_id.is_(None), WalletModel.lease_expires_at <= now)


def _to_wallet(row: WalletModel) -> Wallet:
    return Wallet(
        id=row.id,
        address=row.address,
        private_key=row.private_key,
        blockchain=row.blockchain,
        is_active=row.is_active,
    )


class SqlLeaseStore(LeaseStore):
    """Lease store shared by every worker process through the database."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with translate_store_errors("wallets"):
            with self.session_factory() as session:
                with session.begin():
                    yield session

    def configure(self, wallets: list[WalletConfig]) -> list[Wallet]:
        addresses = [config.address for config in wallets]
        with self._transaction() as session:
            for config in wallets:
                row = session.execute(
                    select(WalletModel).where(WalletModel.address == config.address)
                ).scalar_one_or_none()
                if row is None:
                    session.add(
                        WalletModel(
                            address=config.address,
                            private_key=config.private_key.get_secret_value(),
                            blockchain=config.blockchain,
                            is_active=True,
                        )
                    )
                else:
                    row.private_key = config.private_key.get_secret_value()
                    row.blockchain = config.blockchain
                    row.is_active = True

            deactivate = update(WalletModel).values(is_active=False)
            if addresses:
                deactivate = deactivate.where(WalletModel.address.not_in(addresses))
            session.execute(deactivate.execution_options(synchronize_session=False))
        return self.wallets()

    def wallets(self) -> list[Wallet]:
        with translate_store_errors("wallets"):
            with self.session_factory() as session:
                rows = session.scalars(
                    select(WalletModel)
                    .where(WalletModel.is_active.is_(True))
                    .order_by(WalletModel.id)
                ).all()
                return [_to_wallet(row) for row in rows]

    def try_acquire(
        self, holder_id: str, now: datetime, expires_at: datetime
    ) -> WalletLease | None:
        with self._transaction() as session:
            candidates = session.scalars(
                select(WalletModel.id)
                .where(WalletModel.is_active.is_(True), _free(now))
                .order_by(WalletModel.last_used_at.asc().nulls_first(), WalletModel.id)
            ).all()
            for wallet_id in candidates:
                result = session.execute(
                    update(WalletModel)
                    .where(
                        WalletModel.id == wallet_id,
                        WalletModel.is_active.is_(True),
                        _free(now),
                    )
                    .values(
                        holder_id=holder_id,
                        locked_at=now,
                        lease_expires_at=expires_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    row = session.get(WalletModel, wallet_id)
                    assert row is not None
                    return WalletLease(
                        wallet_id=wallet_id,
                        holder_id=holder_id,
                        acquired_at=now,
                        expires_at=expires_at,
                        wallet=_to_wallet(row),
                    )
        return None

    def release(
        self, wallet_id: int, holder_id: str, now: datetime, success: bool | None
    ) -> bool:
        values = {
            "holder_id": None,
            "locked_at": None,
            "lease_expires_at": None,
            "last_used_at": now,
        }
        if success is not None:
            values["total_uses"] = WalletModel.total_uses + 1
            if success:
                values["successful_uses"] = WalletModel.successful_uses + 1
            else:
                values["failed_uses"] = WalletModel.failed_uses + 1

        with self._transaction() as session:
            result = session.execute(
                update(WalletModel)
                .where(WalletModel.id == wallet_id, WalletModel.holder_id == holder_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def renew(
        self, wallet_id: int, holder_id: str, now: datetime, expires_at: datetime
    ) -> WalletLease | None:
        with self._transaction() as session:
            result = session.execute(
                update(WalletModel)
                .where(
                    WalletModel.id == wallet_id,
                    WalletModel.holder_id == holder_id,
                    WalletModel.lease_expires_at > now,
                )
                .values(lease_expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            row = session.get(WalletModel, wallet_id)
            assert row is not None
            return WalletLease(
                wallet_id=wallet_id,
                holder_id=holder_id,
                acquired_at=row.locked_at or now,
                expires_at=expires_at,
                wallet=_to_wallet(row),
            )

    def reap_expired(self, now: datetime) -> int:
        with self._transaction() as session:
            result = session.execute(
                update(WalletModel)
                .where(
                    WalletModel.holder_id.is_not(None),
                    WalletModel.lease_expires_at <= now,
                )
                .values(holder_id=None, locked_at=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
        return int(result.rowcount)

    def stats(self, now: datetime) -> WalletStats:
        with translate_store_errors("wallets"):
            with self.session_factory() as session:
                total = session.execute(
                    select(func.count())
                    .select_from(WalletModel)
                    .where(WalletModel.is_active.is_(True))
                ).scalar_one()
                locked = session.execute(
                    select(func.count())
                    .select_from(WalletModel)
                    .where(
                        WalletModel.is_active.is_(True),
                        WalletModel.holder_id.is_not(None),
                        WalletModel.lease_expires_at > now,
                    )
                ).scalar_one()
        return WalletStats(
            total=int(total), available=int(total) - int(locked), locked=int(locked)
        )

    def usage(self) -> list[WalletUsage]:
        with translate_store_errors("wallets"):
            with self.session_factory() as session:
                rows = session.scalars(
                    select(WalletModel)
                    .where(WalletModel.is_active.is_(True))
                    .order_by(WalletModel.id)
                ).all()
                return [
                    WalletUsage(
                        wallet_id=row.id,
                        address=row.address,
                        total_uses=row.total_uses,
                        successful_uses=row.successful_uses,
                        failed_uses=row.failed_uses,
                        last_used_at=row.last_used_at,
                        locked=row.holder_id is not None,
                    )
                    for row in rows
                ]

    def ping(self) -> bool:
        with translate_store_errors("wallets"):
            with self.session_factory() as session:
                session.execute(select(1))
        return True
