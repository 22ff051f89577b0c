"""Asset registry: durable source of truth for every submission.

Every status change is a single-row ``UPDATE ... WHERE status = <expected>``.
The database applies it atomically, so when several workers race on the
same asset exactly one update matches a row and wins. No other lock guards
the registry.

A claim on a publishing asset carries a token issued by ``mark_publishing``.
Transitions out of publishing also match the token, so a worker whose claim
was recovered and handed to someone else cannot land a late result.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from publisher.core.clock import Clock, utcnow
from publisher.core.config import settings
from publisher.core.errors import (
    AssetNotFound,
    IllegalTransition,
    StoreUnavailable,
    ValidationError,
    translate_store_errors,
)
from publisher.core.logging import get_logger
from publisher.dispatch.queue import DispatchQueue
from publisher.registry.models import AssetModel, PublishingAttemptModel
from publisher.registry.types import (
    Asset,
    AssetInput,
    AssetMetadata,
    AssetState,
    AssetStatusView,
    AttemptStatus,
    PublishingAttempt,
    PublishOptions,
)

logger = get_logger(__name__).bind(module="asset_registry")

RECOVERED_ERROR = "Recovered: publishing stalled without a result"


def _seconds(value: timedelta | float) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


class AssetRegistry:
    """Stores submissions and owns every lifecycle transition.

    State machine: pending -> queued -> publishing -> published | queued
    (retry) | failed. Published and failed are terminal; ``retry_failed``
    is the only way back from failed.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        dispatch: Optional[DispatchQueue] = None,
        clock: Clock = utcnow,
        default_priority: int | None = None,
        default_max_attempts: int | None = None,
        default_epochs: int | None = None,
    ) -> None:
        """Initialize registry.

        Args:
            session_factory: SQLAlchemy session factory for the asset tables
            dispatch: Queue signalled whenever an asset becomes queued
            clock: Source of naive UTC timestamps
            default_priority: Priority for submissions that set none
            default_max_attempts: Attempt budget for submissions that set none
            default_epochs: Storage epochs for submissions that set none
        """
        self.session_factory = session_factory
        self.dispatch = dispatch
        self.clock = clock
        self.default_priority = (
            settings.DEFAULT_PRIORITY if default_priority is None else default_priority
        )
        self.default_max_attempts = default_max_attempts or settings.DEFAULT_MAX_ATTEMPTS
        self.default_epochs = default_epochs or settings.DEFAULT_EPOCHS

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                with session.begin():
                    yield session

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def register(
        self,
        content: Any,
        metadata: AssetMetadata | dict[str, Any] | None = None,
        options: PublishOptions | dict[str, Any] | None = None,
    ) -> AssetStatusView:
        """Persist a new submission and signal the dispatch queue.

        Args:
            content: Knowledge asset payload (a JSON object)
            metadata: Source, source id and tags
            options: Priority, attempt budget, privacy and epochs

        Returns:
            The committed registration: status pending, zero attempts

        Raises:
            ValidationError: If the submission is malformed
            StoreUnavailable: If the registry cannot be reached
        """
        try:
            submission = AssetInput(
                content=content,
                metadata=metadata if metadata is not None else {},
                publish_options=options if options is not None else {},
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid submission: {e.error_count()} error(s)",
                errors=e.errors(include_url=False),
            ) from e

        publish_options = submission.publish_options
        now = self.clock()
        asset = AssetModel(
            content=submission.content,
            source=submission.metadata.source,
            source_id=submission.metadata.source_id,
            tags=submission.metadata.tags,
            priority=(
                self.default_priority
                if publish_options.priority is None
                else publish_options.priority
            ),
            privacy=publish_options.privacy.value,
            epochs=publish_options.epochs or self.default_epochs,
            max_attempts=publish_options.max_attempts or self.default_max_attempts,
            status=AssetState.PENDING.value,
            attempt_count=0,
            created_at=now,
            updated_at=now,
        )
        with self._transaction() as session:
            session.add(asset)
            session.flush()
            registered = AssetStatusView.model_validate(asset)

        logger.info(
            "Asset registered",
            asset_id=registered.id,
            source=registered.source,
            priority=registered.priority,
        )
        try:
            self._signal(registered.id, registered.priority)
        except StoreUnavailable as e:
            logger.error(
                "Asset stored but not signalled; it stays pending for the next sweep",
                asset_id=registered.id,
                error=str(e),
            )
        return registered

    def _signal(self, asset_id: str, priority: int) -> bool:
        """Move a pending asset to queued and hint the dispatch queue."""
        now = self.clock()
        with self._transaction() as session:
            result = session.execute(
                update(AssetModel)
                .where(
                    AssetModel.id == asset_id,
                    AssetModel.status == AssetState.PENDING.value,
                )
                .values(
                    status=AssetState.QUEUED.value,
                    queued_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            return False
        self._enqueue(asset_id, priority)
        return True

    def _enqueue(self, asset_id: str, priority: int, delay: float = 0.0) -> None:
        """Hint the dispatch queue; a lost hint is picked up by ``resignal_stale``."""
        if self.dispatch is None:
            return
        try:
            self.dispatch.enqueue(asset_id, priority=priority, delay=delay)
        except StoreUnavailable as e:
            logger.error(
                "Dispatch signal lost; asset stays queued for the next sweep",
                asset_id=asset_id,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_publishing(self, asset_id: str) -> str | None:
        """Claim a queued asset for publishing.

        The returned claim token must accompany every later transition of
        this claim. Once the claim is recovered and handed to another
        worker, the old token no longer matches and its holder gets
        ``IllegalTransition``.

        Returns:
            Claim token for exactly one caller per queued asset; None when
            the asset is in any other state or does not exist
        """
        now = self.clock()
        token = uuid4().hex
        with self._transaction() as session:
            result = session.execute(
                update(AssetModel)
                .where(
                    AssetModel.id == asset_id,
                    AssetModel.status == AssetState.QUEUED.value,
                )
                .values(
                    status=AssetState.PUBLISHING.value,
                    publishing_started_at=now,
                    claim_token=token,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        return token if result.rowcount == 1 else None

    def release_claim(self, asset_id: str, claim: str) -> bool:
        """Return a claimed asset to queued without spending an attempt.

        Used when a worker claimed an asset but no wallet was free.
        """
        now = self.clock()
        with self._transaction() as session:
            result = session.execute(
                update(AssetModel)
                .where(
                    AssetModel.id == asset_id,
                    AssetModel.status == AssetState.PUBLISHING.value,
                    AssetModel.claim_token == claim,
                )
                .values(
                    status=AssetState.QUEUED.value,
                    publishing_started_at=None,
                    queued_at=now,
                    updated_at=now,
                    claim_token=None,
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def mark_published(
        self,
        asset_id: str,
        claim: str,
        locator: str,
        transaction_hash: str | None = None,
    ) -> None:
        """Record a successful publish.

        Raises:
            ValueError: If ``locator`` is empty
            IllegalTransition: If the asset is no longer publishing under ``claim``
            AssetNotFound: If the asset does not exist
        """
        if not locator:
            raise ValueError("A published asset needs a locator")
        now = self.clock()
        with self._transaction() as session:
            result = session.execute(
                update(AssetModel)
                .where(
                    AssetModel.id == asset_id,
                    AssetModel.status == AssetState.PUBLISHING.value,
                    AssetModel.claim_token == claim,
                )
                .values(
                    status=AssetState.PUBLISHED.value,
                    asset_locator=locator,
                    transaction_hash=transaction_hash,
                    last_error=None,
                    published_at=now,
                    updated_at=now,
                    claim_token=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._raise_for_state(session, asset_id, AssetState.PUBLISHED)
        logger.info("Asset published", asset_id=asset_id, locator=locator)

    def mark_failed(self, asset_id: str, claim: str, error: str) -> AssetState:
        """Count a failed attempt.

        The asset returns to queued while attempts remain and becomes
        failed once ``max_attempts`` is reached. The caller re-signals the
        dispatch queue when queued is returned.

        Returns:
            The state the asset moved to (queued or failed)

        Raises:
            IllegalTransition: If the asset is no longer publishing under ``claim``
            AssetNotFound: If the asset does not exist
        """
        now = self.clock()
        new_count = AssetModel.attempt_count + 1
        retry = new_count < AssetModel.max_attempts
        with self._transaction() as session:
            result = session.execute(
                update(AssetModel)
                .where(
                    AssetModel.id == asset_id,
                    AssetModel.status == AssetState.PUBLISHING.value,
                    AssetModel.claim_token == claim,
                )
                .values(
                    attempt_count=new_count,
                    status=case(
                        (retry, AssetState.QUEUED.value),
                        else_=AssetState.FAILED.value,
                    ),
                    queued_at=case((retry, now), else_=AssetModel.queued_at),
                    publishing_started_at=None,
                    last_error=error,
                    claim_token=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._raise_for_state(session, asset_id, AssetState.FAILED)
            row = session.execute(
                select(AssetModel.status, AssetModel.attempt_count, AssetModel.max_attempts)
                .where(AssetModel.id == asset_id)
            ).one()

        state = AssetState(row.status)
        logger.warning(
            "Asset publish attempt failed",
            asset_id=asset_id,
            attempt=row.attempt_count,
            max_attempts=row.max_attempts,
            next_state=state.value,
            error=error,
        )
        return state

    def _raise_for_state(
        self, session: Session, asset_id: str, target: AssetState
    ) -> None:
        current = session.execute(
            select(AssetModel.status).where(AssetModel.id == asset_id)
        ).scalar_one_or_none()
        if current is None:
            raise AssetNotFound(asset_id)
        raise IllegalTransition(asset_id, AssetState.PUBLISHING.value, target.value)

    # ------------------------------------------------------------------
    # Recovery and operator actions
    # ------------------------------------------------------------------

    def recover_stuck(self, older_than: timedelta | float) -> list[str]:
        """Return stale publishing assets to queued and re-signal them.

        A publishing row whose last update predates ``now - older_than``
        belongs to a worker that crashed mid-publish. Each such row moves
        exactly once per call; attempts are not counted.

        Args:
            older_than: Age (timedelta or seconds) after which a publishing
                row is considered stuck

        Returns:
            Ids of the recovered assets
        """
        now = self.clock()
        cutoff = now - _seconds(older_than)
        recovered: list[tuple[str, int]] = []
        with self._transaction() as session:
            candidates = session.execute(
                select(AssetModel.id, AssetModel.priority).where(
                    AssetModel.status == AssetState.PUBLISHING.value,
                    AssetModel.updated_at < cutoff,
                )
            ).all()
            for candidate in candidates:
                result = session.execute(
                    update(AssetModel)
                    .where(
                        AssetModel.id == candidate.id,
                        AssetModel.status == AssetState.PUBLISHING.value,
                        AssetModel.updated_at < cutoff,
                    )
                    .values(
                        status=AssetState.QUEUED.value,
                        publishing_started_at=None,
                        queued_at=now,
                        updated_at=now,
                        last_error=RECOVERED_ERROR,
                        claim_token=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    recovered.append((candidate.id, candidate.priority))

        for asset_id, priority in recovered:
            logger.warning("Recovered stuck asset", asset_id=asset_id)
            self._enqueue(asset_id, priority)
        return [asset_id for asset_id, _ in recovered]

    def resignal_stale(self, older_than: timedelta | float) -> list[str]:
        """Re-issue dispatch hints that may have been lost.

        Pending assets are promoted to queued. Queued assets untouched for
        ``older_than`` get a fresh hint; duplicates this creates are
        resolved by ``mark_publishing``.

        Returns:
            Ids that were signalled
        """
        now = self.clock()
        cutoff = now - _seconds(older_than)
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                pending = session.execute(
                    select(AssetModel.id, AssetModel.priority).where(
                        AssetModel.status == AssetState.PENDING.value,
                        AssetModel.updated_at < cutoff,
                    )
                ).all()

        signalled = [row.id for row in pending if self._signal(row.id, row.priority)]

        stale: list[tuple[str, int]] = []
        with self._transaction() as session:
            candidates = session.execute(
                select(AssetModel.id, AssetModel.priority).where(
                    AssetModel.status == AssetState.QUEUED.value,
                    AssetModel.updated_at < cutoff,
                )
            ).all()
            for candidate in candidates:
                result = session.execute(
                    update(AssetModel)
                    .where(
                        AssetModel.id == candidate.id,
                        AssetModel.status == AssetState.QUEUED.value,
                        AssetModel.updated_at < cutoff,
                    )
                    .values(updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    stale.append((candidate.id, candidate.priority))

        for asset_id, priority in stale:
            self._enqueue(asset_id, priority)
            signalled.append(asset_id)

        if signalled:
            logger.info("Re-signalled idle assets", count=len(signalled))
        return signalled

    def retry_failed(
        self, source: str | None = None, max_attempts: int | None = None
    ) -> int:
        """Reactivate failed assets.

        Each failed asset (optionally only those from ``source``) returns
        to queued with a fresh attempt budget and is re-enqueued.

        Args:
            source: Restrict the retry to one submission source
            max_attempts: New attempt budget; keeps the old one when None

        Returns:
            Number of assets reactivated
        """
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        now = self.clock()
        query = select(AssetModel.id, AssetModel.priority).where(
            AssetModel.status == AssetState.FAILED.value
        )
        if source is not None:
            query = query.where(AssetModel.source == source)

        values: dict[str, Any] = {
            "status": AssetState.QUEUED.value,
            "attempt_count": 0,
            "queued_at": now,
            "updated_at": now,
        }
        if max_attempts is not None:
            values["max_attempts"] = max_attempts

        retried: list[tuple[str, int]] = []
        with self._transaction() as session:
            for candidate in session.execute(query).all():
                result = session.execute(
                    update(AssetModel)
                    .where(
                        AssetModel.id == candidate.id,
                        AssetModel.status == AssetState.FAILED.value,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    retried.append((candidate.id, candidate.priority))

        for asset_id, priority in retried:
            self._enqueue(asset_id, priority)
        logger.info("Retrying failed assets", count=len(retried), source=source)
        return len(retried)

    # ------------------------------------------------------------------
    # Publishing attempts
    # ------------------------------------------------------------------

    def start_attempt(
        self,
        asset_id: str,
        claim: str,
        wallet_id: int | None,
        worker_id: str | None,
    ) -> int:
        """Open an audit record for a publish try and note the wallet used.

        Raises:
            IllegalTransition: If the asset is no longer publishing under ``claim``
            AssetNotFound: If the asset does not exist
        """
        now = self.clock()
        with self._transaction() as session:
            asset = session.get(AssetModel, asset_id)
            if asset is None:
                raise AssetNotFound(asset_id)
            if asset.status != AssetState.PUBLISHING.value or asset.claim_token != claim:
                raise IllegalTransition(asset_id, AssetState.PUBLISHING.value, "attempt")
            asset.wallet_id = wallet_id
            attempt = PublishingAttemptModel(
                asset_id=asset_id,
                attempt_number=asset.attempt_count + 1,
                worker_id=worker_id,
                wallet_id=wallet_id,
                status=AttemptStatus.STARTED.value,
                started_at=now,
            )
            session.add(attempt)
            session.flush()
            return int(attempt.id)

    def finish_attempt(
        self,
        attempt_id: int,
        success: bool,
        locator: str | None = None,
        transaction_hash: str | None = None,
        error: str | None = None,
        error_type: str | None = None,
    ) -> None:
        """Close an audit record with the publish outcome."""
        now = self.clock()
        with self._transaction() as session:
            attempt = session.get(PublishingAttemptModel, attempt_id)
            if attempt is None:
                logger.warning("Publishing attempt not found", attempt_id=attempt_id)
                return
            attempt.status = (
                AttemptStatus.SUCCESS.value if success else AttemptStatus.FAILED.value
            )
            attempt.locator = locator
            attempt.transaction_hash = transaction_hash
            attempt.error_message = error
            attempt.error_type = error_type[:50] if error_type else None
            attempt.completed_at = now
            attempt.duration_seconds = (now - attempt.started_at).total_seconds()

    def get_attempts(self, asset_id: str) -> list[PublishingAttempt]:
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                rows = session.scalars(
                    select(PublishingAttemptModel)
                    .where(PublishingAttemptModel.asset_id == asset_id)
                    .order_by(PublishingAttemptModel.attempt_number, PublishingAttemptModel.id)
                ).all()
                return [PublishingAttempt.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, asset_id: str) -> Asset:
        """Get the full asset record.

        Raises:
            AssetNotFound: If the asset does not exist
        """
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                asset = session.get(AssetModel, asset_id)
                if asset is None:
                    raise AssetNotFound(asset_id)
                return Asset.model_validate(asset)

    def get_status(self, asset_id: str) -> AssetStatusView:
        """Get the committed status of an asset, without its payload."""
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                asset = session.get(AssetModel, asset_id)
                if asset is None:
                    raise AssetNotFound(asset_id)
                return AssetStatusView.model_validate(asset)

    def get_counts_by_status(
        self,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
    ) -> dict[str, int]:
        """Number of assets in each state, zero-filled.

        Args:
            created_from: Only assets created at or after this time
            created_to: Only assets created at or before this time
        """
        query = select(AssetModel.status, func.count())
        if created_from is not None:
            query = query.where(AssetModel.created_at >= created_from)
        if created_to is not None:
            query = query.where(AssetModel.created_at <= created_to)
        counts = {state.value: 0 for state in AssetState}
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                rows = session.execute(query.group_by(AssetModel.status)).all()
        for status, count in rows:
            counts[status] = int(count)
        return counts

    def get_by_source(
        self,
        source: str,
        status: AssetState | str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[AssetStatusView]:
        """List a source's assets, newest first."""
        query = select(AssetModel).where(AssetModel.source == source)
        if status is not None:
            query = query.where(AssetModel.status == AssetState(status).value)
        query = query.order_by(AssetModel.created_at.desc(), AssetModel.id)
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        with translate_store_errors("registry"):
            with self.session_factory() as session:
                return [
                    AssetStatusView.model_validate(row)
                    for row in session.scalars(query).all()
                ]

    def get_source_counts(self, source: str) -> dict[str, int]:
        """Zero-filled status counts for one source."""
        counts = {state.value: 0 for state in AssetState}
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                rows = session.execute(
                    select(AssetModel.status, func.count())
                    .where(AssetModel.source == source)
                    .group_by(AssetModel.status)
                ).all()
        for status, count in rows:
            counts[status] = int(count)
        return counts

    def count_stuck(self, older_than: timedelta | float) -> int:
        """Publishing assets whose last update predates ``now - older_than``."""
        cutoff = self.clock() - _seconds(older_than)
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                return int(
                    session.execute(
                        select(func.count())
                        .select_from(AssetModel)
                        .where(
                            AssetModel.status == AssetState.PUBLISHING.value,
                            AssetModel.updated_at < cutoff,
                        )
                    ).scalar_one()
                )

    def average_publish_seconds(self) -> float:
        """Mean duration of successful publishing attempts."""
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                value = session.execute(
                    select(func.avg(PublishingAttemptModel.duration_seconds)).where(
                        PublishingAttemptModel.status == AttemptStatus.SUCCESS.value
                    )
                ).scalar_one()
        return float(value or 0.0)

    def get_hourly_counts(self, hours: int = 24) -> list[dict[str, Any]]:
        """Assets created in the last ``hours``, bucketed by creation hour.

        Bucketing happens in Python; the query uses no dialect-specific date
        functions. Newest hour first; hours with no submissions are omitted.
        """
        cutoff = self.clock() - timedelta(hours=hours)
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                rows = session.execute(
                    select(AssetModel.created_at, AssetModel.status).where(
                        AssetModel.created_at >= cutoff
                    )
                ).all()

        buckets: dict[datetime, dict[str, Any]] = {}
        for created_at, status in rows:
            hour = created_at.replace(minute=0, second=0, microsecond=0)
            bucket = buckets.setdefault(
                hour, {"hour": hour, "total": 0, "published": 0, "failed": 0}
            )
            bucket["total"] += 1
            if status in (AssetState.PUBLISHED.value, AssetState.FAILED.value):
                bucket[status] += 1
        return [buckets[hour] for hour in sorted(buckets, reverse=True)]

    def get_priority_breakdown(self) -> list[dict[str, Any]]:
        """Totals, published counts and queue-to-publish times per priority.

        Only assets that reached the queue are counted. Highest priority first.
        """
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                rows = session.execute(
                    select(
                        AssetModel.priority,
                        AssetModel.status,
                        AssetModel.queued_at,
                        AssetModel.published_at,
                    ).where(AssetModel.queued_at.is_not(None))
                ).all()

        groups: dict[int, dict[str, Any]] = {}
        for priority, status, queued_at, published_at in rows:
            group = groups.setdefault(
                priority, {"priority": priority, "total": 0, "published": 0, "waits": []}
            )
            group["total"] += 1
            if status == AssetState.PUBLISHED.value:
                group["published"] += 1
                if published_at is not None:
                    group["waits"].append((published_at - queued_at).total_seconds())

        breakdown = []
        for priority in sorted(groups, reverse=True):
            group = groups[priority]
            waits = group.pop("waits")
            group["average_seconds_to_publish"] = sum(waits) / len(waits) if waits else None
            breakdown.append(group)
        return breakdown

    def count_failed_attempts(self, since: timedelta | float = timedelta(hours=1)) -> int:
        """Failed publishing attempts completed within ``since``."""
        cutoff = self.clock() - _seconds(since)
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                return int(
                    session.execute(
                        select(func.count())
                        .select_from(PublishingAttemptModel)
                        .where(
                            PublishingAttemptModel.status == AttemptStatus.FAILED.value,
                            PublishingAttemptModel.completed_at >= cutoff,
                        )
                    ).scalar_one()
                )

    def get_error_distribution(
        self, since: timedelta | float = timedelta(days=7)
    ) -> list[dict[str, Any]]:
        """Failed attempts grouped by error type, most frequent first."""
        cutoff = self.clock() - _seconds(since)
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                rows = session.execute(
                    select(
                        PublishingAttemptModel.error_type,
                        func.count().label("count"),
                        func.max(PublishingAttemptModel.completed_at).label("last_seen"),
                    )
                    .where(
                        PublishingAttemptModel.status == AttemptStatus.FAILED.value,
                        PublishingAttemptModel.completed_at >= cutoff,
                    )
                    .group_by(PublishingAttemptModel.error_type)
                    .order_by(func.count().desc())
                ).all()
        return [
            {
                "error_type": row.error_type or "unknown",
                "count": int(row.count),
                "last_seen": row.last_seen,
            }
            for row in rows
        ]

    def ping(self) -> bool:
        """Check the database is reachable."""
        with translate_store_errors("registry"):
            with self.session_factory() as session:
                session.execute(select(1))
        return True
