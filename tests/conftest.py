"""Test configuration."""

import os
from collections.abc import Generator
from pathlib import Path

# Settings are read at import time; switch them to test mode first
os.environ["TESTING"] = "true"

import pytest
from dotenv import load_dotenv
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

project_dir = Path(__file__).parent.parent
env_test_file = project_dir / ".env.test"
if env_test_file.exists():
    load_dotenv(env_test_file, override=True)

from publisher.core.db import build_engine, build_session_factory, create_tables  # noqa: E402
from publisher.core.logging import configure_logging  # noqa: E402
from publisher.dispatch.backends import MemoryDispatchBackend  # noqa: E402
from publisher.dispatch.queue import DispatchQueue  # noqa: E402
from publisher.dispatch.workers import MemoryWorkerRegistry  # noqa: E402
from publisher.ledger.test_mock import MockLedgerClient  # noqa: E402
from publisher.registry.registry import AssetRegistry  # noqa: E402
from publisher.wallets.pool import WalletPool  # noqa: E402
from publisher.wallets.store import MemoryLeaseStore  # noqa: E402
from publisher.worker.processor import PublishWorker  # noqa: E402
from tests.helpers import FakeClock, build_worker, wallet_definitions  # noqa: E402

fixture = pytest.fixture


def pytest_configure(config: pytest.Config) -> None:
    """Configure logging for the test environment."""
    configure_logging(testing=True, level="DEBUG")


@fixture
def clock() -> FakeClock:
    return FakeClock()


@fixture
def db_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """SQLite database file with every publisher table created."""
    engine = build_engine(f"sqlite:///{tmp_path / 'publisher.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@fixture
def session_factory(db_engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(db_engine)


@fixture
def dispatch() -> DispatchQueue:
    return DispatchQueue(MemoryDispatchBackend())


@fixture
def registry(session_factory: sessionmaker[Session], dispatch: DispatchQueue) -> AssetRegistry:
    return AssetRegistry(
        session_factory,
        dispatch=dispatch,
        default_priority=50,
        default_max_attempts=3,
        default_epochs=2,
    )


@fixture
def wallet_pool() -> WalletPool:
    """In-memory pool with two wallets that never waits for a free one."""
    pool = WalletPool(
        MemoryLeaseStore(), lease_duration=900, acquire_timeout=0, poll_interval=0.01
    )
    pool.configure(wallet_definitions(2))
    return pool


@fixture
def worker_registry() -> MemoryWorkerRegistry:
    return MemoryWorkerRegistry()


@fixture
def ledger() -> MockLedgerClient:
    return MockLedgerClient()


@fixture
def worker(
    registry: AssetRegistry,
    wallet_pool: WalletPool,
    dispatch: DispatchQueue,
    ledger: MockLedgerClient,
    worker_registry: MemoryWorkerRegistry,
) -> PublishWorker:
    return build_worker(
        registry, wallet_pool, dispatch, ledger, worker_registry=worker_registry
    )
