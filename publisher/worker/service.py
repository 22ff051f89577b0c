"""Publisher service: wires the stores together and runs worker threads."""

import threading
from typing import Any

import redis
from sqlalchemy.orm import Session, sessionmaker

from publisher.core.config import Settings, settings
from publisher.core.db import get_session_factory
from publisher.core.errors import StoreUnavailable
from publisher.core.logging import get_logger
from publisher.dispatch.backends import MemoryDispatchBackend
from publisher.dispatch.queue import DispatchQueue
from publisher.dispatch.redis_backend import RedisDispatchBackend
from publisher.dispatch.workers import (
    MemoryWorkerRegistry,
    RedisWorkerRegistry,
    WorkerRegistry,
)
from publisher.ledger.base import BaseLedgerClient
from publisher.ledger.loader import load_ledger_client
from publisher.registry.registry import AssetRegistry
from publisher.registry.types import AssetStatusView
from publisher.wallets.pool import WalletPool
from publisher.wallets.sql_store import SqlLeaseStore
from publisher.wallets.store import LeaseStore, MemoryLeaseStore
from publisher.wallets.types import Wallet
from publisher.worker.maintenance import MaintenanceLoop
from publisher.worker.processor import PublishWorker, default_worker_id

logger = get_logger(__name__).bind(module="publisher_service")


class PublisherService:
    """Composition root for one publisher process.

    Several processes may run against the same database and Redis; the
    registry's conditional updates and the lease store keep them from
    stepping on each other.
    """

    def __init__(
        self,
        registry: AssetRegistry,
        wallet_pool: WalletPool,
        dispatch: DispatchQueue,
        ledger: BaseLedgerClient,
        worker_registry: WorkerRegistry | None = None,
        config: Settings = settings,
        restart_delay: float = 5.0,
    ) -> None:
        self.registry = registry
        self.wallet_pool = wallet_pool
        self.dispatch = dispatch
        self.ledger = ledger
        self.worker_registry = worker_registry or MemoryWorkerRegistry()
        self.config = config
        self.restart_delay = restart_delay
        self.maintenance = MaintenanceLoop(
            registry,
            wallet_pool,
            interval=config.MAINTENANCE_INTERVAL,
            stuck_after=config.STUCK_PUBLISHING_SECONDS,
            stale_after=config.STALE_QUEUED_SECONDS,
        )
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._process_id = default_worker_id()

    @classmethod
    def from_settings(
        cls,
        config: Settings = settings,
        ledger: BaseLedgerClient | None = None,
        session_factory: sessionmaker[Session] | None = None,
        redis_client: redis.Redis | None = None,
    ) -> "PublisherService":
        """Build a service from configuration.

        Args:
            config: Settings to read backends and timings from
            ledger: Ledger client; loaded from ``LEDGER_CLIENT`` when omitted
            session_factory: Database sessions; the process-wide factory
                when omitted
            redis_client: Redis client for the Redis backends; created from
                ``REDIS_URL`` when needed and omitted

        Returns:
            Configured service, not yet started
        """
        factory = session_factory or get_session_factory()

        if config.DISPATCH_BACKEND == "redis":
            client = redis_client or redis.Redis(
                connection_pool=redis.ConnectionPool.from_url(
                    config.REDIS_URL,
                    # Every worker holds a connection while blocked on a pop
                    max_connections=max(
                        config.REDIS_POOL_SIZE, config.PUBLISHER_WORKER_COUNT + 2
                    ),
                    socket_connect_timeout=5,
                    socket_keepalive=True,
                )
            )
            dispatch = DispatchQueue(
                RedisDispatchBackend(client, key=config.DISPATCH_QUEUE_KEY)
            )
            worker_registry: WorkerRegistry = RedisWorkerRegistry(
                client, key=f"{config.DISPATCH_QUEUE_KEY}:workers"
            )
        elif config.DISPATCH_BACKEND == "memory":
            dispatch = DispatchQueue(MemoryDispatchBackend())
            worker_registry = MemoryWorkerRegistry()
        else:
            raise ValueError(f"Unsupported dispatch backend: {config.DISPATCH_BACKEND}")

        if config.LEASE_BACKEND == "sql":
            store: LeaseStore = SqlLeaseStore(factory)
        elif config.LEASE_BACKEND == "memory":
            store = MemoryLeaseStore()
        else:
            raise ValueError(f"Unsupported lease backend: {config.LEASE_BACKEND}")

        registry = AssetRegistry(
            factory,
            dispatch=dispatch,
            default_priority=config.DEFAULT_PRIORITY,
            default_max_attempts=config.DEFAULT_MAX_ATTEMPTS,
            default_epochs=config.DEFAULT_EPOCHS,
        )
        wallet_pool = WalletPool(
            store,
            lease_duration=config.WALLET_LEASE_SECONDS,
            acquire_timeout=config.WALLET_ACQUIRE_TIMEOUT,
            poll_interval=config.WALLET_ACQUIRE_POLL_INTERVAL,
        )
        if ledger is None:
            ledger = load_ledger_client(config.LEDGER_CLIENT, timeout=config.LEDGER_TIMEOUT)

        return cls(
            registry,
            wallet_pool,
            dispatch,
            ledger,
            worker_registry=worker_registry,
            config=config,
        )

    # ------------------------------------------------------------------
    # Submission surface
    # ------------------------------------------------------------------

    def submit(
        self,
        content: Any,
        metadata: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> AssetStatusView:
        """Register a knowledge asset for publishing."""
        return self.registry.register(content, metadata, options)

    def configure_wallets(self, wallets: list[dict[str, Any]] | None = None) -> list[Wallet]:
        """Install wallets, from configuration unless given explicitly."""
        definitions = self.config.load_wallets() if wallets is None else wallets
        if not definitions:
            logger.warning("No wallets configured; every publish will wait for one")
        return self.wallet_pool.configure(definitions)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_worker(self, worker_id: str | None = None) -> PublishWorker:
        return PublishWorker(
            self.registry,
            self.wallet_pool,
            self.dispatch,
            self.ledger,
            worker_id=worker_id,
            worker_registry=self.worker_registry,
            backpressure_delay=self.config.BACKPRESSURE_DELAY,
            retry_backoff_base=self.config.RETRY_BACKOFF_BASE,
            retry_backoff_max=self.config.RETRY_BACKOFF_MAX,
            dequeue_timeout=self.config.DEQUEUE_TIMEOUT,
            heartbeat_ttl=self.config.WORKER_HEARTBEAT_TTL,
        )

    def start(self, worker_count: int | None = None, maintenance: bool = True) -> None:
        """Start worker threads (and the maintenance loop) in the background."""
        if self.running:
            raise RuntimeError("Publisher service already running")

        count = worker_count or self.config.PUBLISHER_WORKER_COUNT
        self._stop.clear()
        self._threads = []
        for index in range(count):
            worker = self.create_worker(f"{self._process_id}-{index}")
            self._spawn(f"publish-worker-{index}", self._supervise, worker)
        if maintenance:
            self._spawn("maintenance", self.maintenance.run, self._stop)
        logger.info("Publisher service started", workers=count, maintenance=maintenance)

    def _spawn(self, name: str, target: Any, *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _supervise(self, worker: PublishWorker) -> None:
        """Run ``worker`` and restart it after store outages."""
        while not self._stop.is_set():
            try:
                worker.run(self._stop)
            except StoreUnavailable:
                logger.warning(
                    "Restarting worker after store outage",
                    worker_id=worker.worker_id,
                    delay=self.restart_delay,
                )
                self._stop.wait(self.restart_delay)

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def wait(self) -> None:
        """Block until every background thread has exited."""
        for thread in self._threads:
            while thread.is_alive():
                thread.join(timeout=1.0)

    def stop(self, timeout: float = 30.0) -> None:
        """Ask workers to finish their current entry and wait for them."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        alive = [thread.name for thread in self._threads if thread.is_alive()]
        if alive:
            logger.warning("Threads still running after stop", threads=alive)
        else:
            logger.info("Publisher service stopped")

    def close(self) -> None:
        self.stop()
        self.ledger.close()
        self.dispatch.backend.close()
