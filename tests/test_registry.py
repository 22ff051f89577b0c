"""Tests for the asset registry."""

import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from publisher.core.errors import (
    AssetNotFound,
    IllegalTransition,
    StoreUnavailable,
    ValidationError,
)
from publisher.registry.registry import RECOVERED_ERROR, AssetRegistry
from publisher.registry.types import AssetState, AttemptStatus
from tests.helpers import FakeClock

CONTENT = {"@context": "https://schema.org", "@type": "Organization", "name": "Pantry"}


@pytest.fixture
def clocked_registry(session_factory, dispatch, clock) -> AssetRegistry:
    return AssetRegistry(session_factory, dispatch=dispatch, clock=clock)


def claim(registry: AssetRegistry, asset_id: str) -> str:
    token = registry.mark_publishing(asset_id)
    assert token is not None
    return token


class TestRegister:
    """Submission behavior."""

    def test_should_return_pending_registration(self, registry):
        """register should return the committed pending row with zero attempts."""
        view = registry.register(CONTENT, {"source": "scraper", "sourceId": "a-1"})

        assert view.status == AssetState.PENDING
        assert view.attempt_count == 0
        assert view.priority == 50
        assert view.max_attempts == 3
        assert view.source == "scraper"
        assert view.source_id == "a-1"
        assert view.asset_locator is None

    def test_should_queue_and_signal_dispatch(self, registry, dispatch):
        """A registered asset should become queued with one dispatch entry."""
        view = registry.register(CONTENT, options={"priority": 80})

        assert registry.get_status(view.id).status == AssetState.QUEUED
        entry = dispatch.dequeue(timeout=0)
        assert entry is not None
        assert entry.asset_id == view.id
        assert entry.priority == 80

    def test_should_store_full_record(self, registry):
        """get should return content, tags and publish options."""
        view = registry.register(
            CONTENT,
            {"source": "s", "tags": ["food", "pantry"]},
            {"privacy": "public", "epochs": 5, "maxAttempts": 7},
        )

        asset = registry.get(view.id)

        assert asset.content == CONTENT
        assert asset.tags == ["food", "pantry"]
        assert asset.privacy.value == "public"
        assert asset.epochs == 5
        assert asset.max_attempts == 7

    @pytest.mark.parametrize(
        "content,metadata,options",
        [
            ({}, None, None),
            ("not an object", None, None),
            (CONTENT, None, {"priority": 101}),
            (CONTENT, None, {"priority": -1}),
            (CONTENT, None, {"maxAttempts": 0}),
            (CONTENT, {"unknown": "field"}, None),
        ],
    )
    def test_should_reject_malformed_submissions(self, registry, content, metadata, options):
        """Malformed submissions should raise ValidationError and store nothing."""
        with pytest.raises(ValidationError) as exc_info:
            registry.register(content, metadata, options)

        assert exc_info.value.errors
        assert sum(registry.get_counts_by_status().values()) == 0

    def test_should_survive_lost_dispatch_signal(self, registry, dispatch, mocker):
        """A failed enqueue should be logged, not raised; the asset stays queued."""
        mocker.patch.object(
            dispatch, "enqueue", side_effect=StoreUnavailable("dispatch", RuntimeError("down"))
        )

        view = registry.register(CONTENT)

        assert registry.get_status(view.id).status == AssetState.QUEUED

    def test_should_raise_store_unavailable_when_database_down(self):
        """Database connectivity errors should surface as StoreUnavailable."""
        session_factory = MagicMock(
            side_effect=OperationalError("INSERT", {}, Exception("connection refused"))
        )
        registry = AssetRegistry(session_factory)

        with pytest.raises(StoreUnavailable):
            registry.register(CONTENT)

    def test_should_return_pending_view_when_signal_fails(self, registry, dispatch, mocker):
        """A store outage after the insert commits should leave the asset pending, not raise."""
        mocker.patch.object(
            registry, "_signal", side_effect=StoreUnavailable("registry", RuntimeError("down"))
        )

        view = registry.register(CONTENT)

        assert view.status == AssetState.PENDING
        assert registry.get_status(view.id).status == AssetState.PENDING
        assert dispatch.dequeue(timeout=0) is None


class TestTransitions:
    """Conditional status transitions."""

    def test_should_claim_queued_asset_once(self, registry):
        """mark_publishing should hand out one claim token and then return None."""
        view = registry.register(CONTENT)

        assert registry.mark_publishing(view.id)
        assert registry.mark_publishing(view.id) is None
        assert registry.get_status(view.id).status == AssetState.PUBLISHING

    def test_should_not_claim_missing_asset(self, registry):
        """mark_publishing on an unknown id should return None."""
        assert registry.mark_publishing("does-not-exist") is None

    def test_should_let_exactly_one_concurrent_claim_win(self, registry):
        """Concurrent mark_publishing calls should produce exactly one winner."""
        view = registry.register(CONTENT)
        contenders = 8
        barrier = threading.Barrier(contenders)
        results: list[str | None] = []
        lock = threading.Lock()

        def contend() -> None:
            barrier.wait()
            won = registry.mark_publishing(view.id)
            with lock:
                results.append(won)

        threads = [threading.Thread(target=contend) for _ in range(contenders)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert len(results) == contenders
        assert len([token for token in results if token is not None]) == 1

    def test_should_record_publish(self, registry):
        """mark_published should store the locator and transaction hash."""
        view = registry.register(CONTENT)
        token = claim(registry, view.id)

        registry.mark_published(view.id, token, "did:dkg:otp/0xabc/1", "0xfeed")

        status = registry.get_status(view.id)
        assert status.status == AssetState.PUBLISHED
        assert status.asset_locator == "did:dkg:otp/0xabc/1"
        assert status.transaction_hash == "0xfeed"
        assert status.published_at is not None
        assert status.attempt_count == 0

    def test_should_require_locator(self, registry):
        """mark_published should reject an empty locator."""
        view = registry.register(CONTENT)
        token = claim(registry, view.id)

        with pytest.raises(ValueError):
            registry.mark_published(view.id, token, "")
        assert registry.get_status(view.id).status == AssetState.PUBLISHING

    def test_should_reject_publish_of_unclaimed_asset(self, registry):
        """mark_published on a queued asset should raise IllegalTransition."""
        view = registry.register(CONTENT)

        with pytest.raises(IllegalTransition):
            registry.mark_published(view.id, "not-a-claim", "did:dkg:otp/0xabc/1")
        assert registry.get_status(view.id).status == AssetState.QUEUED

    def test_should_raise_not_found_for_missing_asset(self, registry):
        """Transitions and lookups on unknown ids should raise AssetNotFound."""
        with pytest.raises(AssetNotFound):
            registry.mark_published("missing", "not-a-claim", "did:dkg:otp/0xabc/1")
        with pytest.raises(AssetNotFound):
            registry.mark_failed("missing", "not-a-claim", "boom")
        with pytest.raises(AssetNotFound):
            registry.get("missing")

    def test_should_requeue_until_attempts_exhausted(self, registry):
        """mark_failed should requeue below max_attempts and fail at it."""
        view = registry.register(CONTENT, options={"maxAttempts": 2})

        token = claim(registry, view.id)
        assert registry.mark_failed(view.id, token, "timeout") == AssetState.QUEUED
        status = registry.get_status(view.id)
        assert status.attempt_count == 1
        assert status.last_error == "timeout"

        token = claim(registry, view.id)
        assert registry.mark_failed(view.id, token, "reverted") == AssetState.FAILED
        status = registry.get_status(view.id)
        assert status.status == AssetState.FAILED
        assert status.attempt_count == 2
        assert status.last_error == "reverted"

    def test_should_fail_immediately_with_single_attempt(self, registry):
        """max_attempts=1 should go straight to failed on the first failure."""
        view = registry.register(CONTENT, options={"maxAttempts": 1})
        token = claim(registry, view.id)

        assert registry.mark_failed(view.id, token, "boom") == AssetState.FAILED
        assert registry.get_status(view.id).attempt_count == 1

    def test_should_not_fail_terminal_asset(self, registry):
        """mark_failed on a published asset should raise IllegalTransition."""
        view = registry.register(CONTENT)
        token = claim(registry, view.id)
        registry.mark_published(view.id, token, "did:dkg:otp/0xabc/1")

        with pytest.raises(IllegalTransition):
            registry.mark_failed(view.id, token, "late failure")
        assert registry.get_status(view.id).status == AssetState.PUBLISHED

    def test_should_release_claim_without_counting_attempt(self, registry):
        """release_claim should return the asset to queued with attempts unchanged."""
        view = registry.register(CONTENT)
        token = claim(registry, view.id)

        assert registry.release_claim(view.id, token) is True
        status = registry.get_status(view.id)
        assert status.status == AssetState.QUEUED
        assert status.attempt_count == 0
        assert registry.release_claim(view.id, token) is False


class TestRecovery:
    """Maintenance sweeps and operator actions."""

    def test_should_recover_stuck_publishing_asset(self, clocked_registry, dispatch, clock):
        """A stale publishing asset should return to queued exactly once."""
        view = clocked_registry.register(CONTENT)
        dispatch.dequeue(timeout=0)
        claim(clocked_registry, view.id)
        clock.advance(1000)

        recovered = clocked_registry.recover_stuck(900)

        assert recovered == [view.id]
        status = clocked_registry.get_status(view.id)
        assert status.status == AssetState.QUEUED
        assert status.attempt_count == 0
        assert status.last_error == RECOVERED_ERROR
        entry = dispatch.dequeue(timeout=0)
        assert entry is not None and entry.asset_id == view.id
        assert clocked_registry.recover_stuck(900) == []

    def test_should_reject_stale_claim_after_recovery(self, clocked_registry, clock):
        """A worker whose claim was recovered should not land a result over the new holder."""
        view = clocked_registry.register(CONTENT, options={"maxAttempts": 1})
        stale = claim(clocked_registry, view.id)
        clock.advance(1000)
        assert clocked_registry.recover_stuck(900) == [view.id]
        fresh = claim(clocked_registry, view.id)

        with pytest.raises(IllegalTransition):
            clocked_registry.mark_failed(view.id, stale, "late failure")
        with pytest.raises(IllegalTransition):
            clocked_registry.mark_published(view.id, stale, "did:dkg:otp/0xabc/9")
        with pytest.raises(IllegalTransition):
            clocked_registry.start_attempt(view.id, stale, wallet_id=1, worker_id="w-old")
        assert clocked_registry.release_claim(view.id, stale) is False

        clocked_registry.mark_published(view.id, fresh, "did:dkg:otp/0xabc/1")

        status = clocked_registry.get_status(view.id)
        assert status.status == AssetState.PUBLISHED
        assert status.asset_locator == "did:dkg:otp/0xabc/1"
        assert status.attempt_count == 0

    def test_should_leave_recent_publishing_asset(self, clocked_registry, clock):
        """recover_stuck should ignore assets updated within the window."""
        view = clocked_registry.register(CONTENT)
        claim(clocked_registry, view.id)
        clock.advance(100)

        assert clocked_registry.recover_stuck(900) == []
        assert clocked_registry.count_stuck(900) == 0
        assert clocked_registry.get_status(view.id).status == AssetState.PUBLISHING

    def test_should_count_stuck_assets(self, clocked_registry, clock):
        """count_stuck should report publishing assets older than the window."""
        view = clocked_registry.register(CONTENT)
        claim(clocked_registry, view.id)
        clock.advance(1000)

        assert clocked_registry.count_stuck(900) == 1

    def test_should_resignal_pending_asset(self, clocked_registry, dispatch, clock):
        """resignal_stale should promote a pending asset whose signal never ran."""
        with patch.object(clocked_registry, "_signal", return_value=False):
            view = clocked_registry.register(CONTENT)
        assert clocked_registry.get_status(view.id).status == AssetState.PENDING
        clock.advance(400)

        signalled = clocked_registry.resignal_stale(300)

        assert signalled == [view.id]
        assert clocked_registry.get_status(view.id).status == AssetState.QUEUED
        entry = dispatch.dequeue(timeout=0)
        assert entry is not None and entry.asset_id == view.id

    def test_should_resignal_idle_queued_asset(self, clocked_registry, dispatch, clock):
        """A queued asset whose hint was lost should get a fresh one."""
        view = clocked_registry.register(CONTENT)
        assert dispatch.dequeue(timeout=0) is not None  # hint consumed and lost
        clock.advance(400)

        assert clocked_registry.resignal_stale(300) == [view.id]
        entry = dispatch.dequeue(timeout=0)
        assert entry is not None and entry.asset_id == view.id
        assert clocked_registry.resignal_stale(300) == []

    def test_should_retry_failed_assets(self, registry, dispatch):
        """retry_failed should requeue failed assets with a fresh attempt count."""
        view = registry.register(CONTENT, {"source": "a"}, {"maxAttempts": 1})
        other = registry.register(CONTENT, {"source": "b"}, {"maxAttempts": 1})
        for asset_id in (view.id, other.id):
            registry.mark_failed(asset_id, claim(registry, asset_id), "boom")
        while dispatch.dequeue(timeout=0) is not None:
            pass

        assert registry.retry_failed(source="a", max_attempts=4) == 1

        status = registry.get_status(view.id)
        assert status.status == AssetState.QUEUED
        assert status.attempt_count == 0
        assert status.max_attempts == 4
        assert registry.get_status(other.id).status == AssetState.FAILED
        entry = dispatch.dequeue(timeout=0)
        assert entry is not None and entry.asset_id == view.id

    def test_should_reject_invalid_retry_budget(self, registry):
        """retry_failed should reject a max_attempts below one."""
        with pytest.raises(ValueError):
            registry.retry_failed(max_attempts=0)


class TestAttempts:
    """Publishing attempt audit trail."""

    def test_should_record_attempt_lifecycle(self, registry):
        """start_attempt and finish_attempt should record the outcome."""
        view = registry.register(CONTENT)
        token = claim(registry, view.id)

        attempt_id = registry.start_attempt(view.id, token, wallet_id=1, worker_id="w-1")
        registry.finish_attempt(attempt_id, success=False, error="boom", error_type="Timeout")

        attempts = registry.get_attempts(view.id)
        assert len(attempts) == 1
        assert attempts[0].attempt_number == 1
        assert attempts[0].status == AttemptStatus.FAILED
        assert attempts[0].error_type == "Timeout"
        assert attempts[0].duration_seconds is not None
        assert registry.get(view.id).wallet_id == 1
        assert registry.count_failed_attempts() == 1
        assert registry.get_error_distribution()[0]["error_type"] == "Timeout"


class TestQueries:
    """Read-only queries."""

    def test_should_zero_fill_counts(self, registry):
        """get_counts_by_status should include every state."""
        registry.register(CONTENT)

        counts = registry.get_counts_by_status()

        assert set(counts) == {state.value for state in AssetState}
        assert counts["queued"] == 1
        assert counts["failed"] == 0

    def test_should_list_source_assets_newest_first(self, session_factory, dispatch):
        """get_by_source should order by creation time, newest first."""
        clock = FakeClock()
        registry = AssetRegistry(session_factory, dispatch=dispatch, clock=clock)
        ids = []
        for _ in range(3):
            ids.append(registry.register(CONTENT, {"source": "feed"}).id)
            clock.advance(10)
        registry.register(CONTENT, {"source": "other"})

        listed = registry.get_by_source("feed")

        assert [view.id for view in listed] == list(reversed(ids))
        assert [v.id for v in registry.get_by_source("feed", limit=1, offset=1)] == [ids[1]]
        assert registry.get_by_source("feed", status="published") == []
        assert registry.get_source_counts("feed")["queued"] == 3

    def test_should_filter_counts_by_creation_window(self, clocked_registry, clock):
        """get_counts_by_status should honor inclusive creation bounds."""
        early = clock()
        clocked_registry.register(CONTENT)
        clock.advance(3600)
        clocked_registry.register(CONTENT)

        assert sum(clocked_registry.get_counts_by_status(created_to=early).values()) == 1
        later = clocked_registry.get_counts_by_status(created_from=early + timedelta(minutes=1))
        assert later["queued"] == 1
        assert sum(clocked_registry.get_counts_by_status(early, clock()).values()) == 2

    def test_should_bucket_assets_by_creation_hour(self, clocked_registry, clock):
        """get_hourly_counts should group by hour, newest first, with outcomes."""
        published = clocked_registry.register(CONTENT).id
        clocked_registry.mark_published(
            published, claim(clocked_registry, published), "did:dkg:otp/0xabc/1"
        )
        clock.advance(1800)
        clocked_registry.register(CONTENT)
        clock.advance(3660)
        failed = clocked_registry.register(CONTENT, options={"maxAttempts": 1}).id
        clocked_registry.mark_failed(failed, claim(clocked_registry, failed), "boom")

        buckets = clocked_registry.get_hourly_counts(24)

        assert buckets == [
            {"hour": datetime(2025, 1, 1, 13), "total": 1, "published": 0, "failed": 1},
            {"hour": datetime(2025, 1, 1, 12), "total": 2, "published": 1, "failed": 0},
        ]
        assert clocked_registry.get_hourly_counts(1) == buckets[:1]

    def test_should_break_down_by_priority(self, clocked_registry, clock):
        """get_priority_breakdown should report totals and queue-to-publish time."""
        fast = clocked_registry.register(CONTENT, options={"priority": 80}).id
        clocked_registry.register(CONTENT, options={"priority": 80})
        slow = clocked_registry.register(CONTENT, options={"priority": 20, "maxAttempts": 1}).id
        clock.advance(60)
        clocked_registry.mark_published(fast, claim(clocked_registry, fast), "did:dkg:otp/0xabc/1")
        clocked_registry.mark_failed(slow, claim(clocked_registry, slow), "boom")
        with patch.object(clocked_registry, "_signal", return_value=False):
            clocked_registry.register(CONTENT, options={"priority": 90})

        breakdown = clocked_registry.get_priority_breakdown()

        assert breakdown == [
            {"priority": 80, "total": 2, "published": 1, "average_seconds_to_publish": 60.0},
            {"priority": 20, "total": 1, "published": 0, "average_seconds_to_publish": None},
        ]
