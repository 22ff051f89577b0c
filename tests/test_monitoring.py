"""Tests for the metrics reporter, health monitor and ops API."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from publisher.core.errors import StoreUnavailable
from publisher.ledger.test_mock import ErrorLedgerClient
from publisher.monitoring.api import create_ops_app
from publisher.monitoring.health import HealthMonitor
from publisher.monitoring.reporter import MetricsReporter, success_rate
from publisher.worker.service import PublisherService
from tests.helpers import build_worker, drain

CONTENT = {"@type": "FoodEstablishment", "name": "Eastside Food Bank"}


@pytest.fixture
def reporter(registry, wallet_pool, dispatch, worker_registry) -> MetricsReporter:
    return MetricsReporter(registry, wallet_pool, dispatch, worker_registry, worker_ttl=60)


@pytest.fixture
def monitor(registry, wallet_pool, dispatch, worker_registry) -> HealthMonitor:
    return HealthMonitor(
        registry, wallet_pool, dispatch, worker_registry, worker_ttl=60, stuck_after=900
    )


@pytest.fixture
def service(registry, wallet_pool, dispatch, ledger, worker_registry) -> PublisherService:
    return PublisherService(
        registry, wallet_pool, dispatch, ledger, worker_registry=worker_registry
    )


@pytest.fixture
def client(service) -> TestClient:
    return TestClient(create_ops_app(service))


class TestMetricsReporter:
    """Aggregate views."""

    def test_should_compute_success_rate(self):
        assert success_rate({}) == 0.0
        assert success_rate({"published": 3, "failed": 1, "queued": 0}) == 75.0

    def test_should_snapshot_pipeline(self, reporter, registry, worker, worker_registry):
        """snapshot should combine counts, wallets, queue and worker liveness."""
        registry.register(CONTENT)
        registry.register(CONTENT)
        worker.process_next(timeout=0)
        worker_registry.heartbeat(worker.worker_id)

        snapshot = reporter.snapshot()

        assert snapshot.assets["published"] == 1
        assert snapshot.assets["queued"] == 1
        assert snapshot.total_assets == 2
        assert snapshot.success_rate == 50.0
        assert snapshot.wallets.model_dump() == {"total": 2, "available": 2, "locked": 0}
        assert snapshot.queue.waiting == 1
        assert snapshot.active_workers == 1
        assert snapshot.average_publish_seconds >= 0

    def test_should_report_source_metrics(self, reporter, registry, wallet_pool, dispatch):
        """source_metrics should only count the source's own assets."""
        worker = build_worker(registry, wallet_pool, dispatch, ErrorLedgerClient())
        registry.register(CONTENT, {"source": "scraper"}, {"maxAttempts": 1})
        registry.register(CONTENT, {"source": "scraper"})
        registry.register(CONTENT, {"source": "manual"})
        worker.process_next(timeout=0)

        metrics = reporter.source_metrics("scraper")

        assert metrics.total_assets == 2
        assert metrics.failed_assets == 1
        assert metrics.published_assets == 0
        assert metrics.in_progress_assets == 1
        assert metrics.success_rate == 0.0

    def test_should_group_errors_by_type(self, reporter, registry, wallet_pool, dispatch):
        worker = build_worker(registry, wallet_pool, dispatch, ErrorLedgerClient())
        registry.register(CONTENT, options={"maxAttempts": 2})
        drain(worker)

        errors = reporter.error_distribution()

        assert [(e["error_type"], e["count"]) for e in errors] == [("TransactionReverted", 2)]

    def test_should_filter_publishing_metrics_by_window(self, reporter, registry, worker):
        """publishing_metrics should only count assets created inside the window."""
        registry.register(CONTENT)
        worker.process_next(timeout=0)
        hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)

        recent = reporter.publishing_metrics(created_from=hour_ago)
        future = reporter.publishing_metrics(created_from=hour_ago + timedelta(days=1))

        assert recent.total_assets == 1
        assert recent.published_assets == 1
        assert recent.success_rate == 100.0
        assert recent.created_from.tzinfo is None
        assert future.total_assets == 0
        assert future.success_rate == 0.0

    def test_should_reject_inverted_window(self, reporter):
        now = datetime(2025, 1, 2)

        with pytest.raises(ValueError):
            reporter.publishing_metrics(created_from=now, created_to=now - timedelta(hours=1))

    def test_should_report_hourly_stats(self, reporter, registry):
        registry.register(CONTENT)
        registry.register(CONTENT)

        stats = reporter.hourly_stats(24)

        assert sum(s.total for s in stats) == 2
        assert all(s.hour.minute == 0 for s in stats)
        with pytest.raises(ValueError):
            reporter.hourly_stats(0)

    def test_should_report_priority_success_rate(self, reporter, registry, wallet_pool, dispatch):
        """priority_metrics should rate each priority level separately."""
        worker = build_worker(registry, wallet_pool, dispatch, ErrorLedgerClient())
        registry.register(CONTENT, options={"priority": 90, "maxAttempts": 1})
        registry.register(CONTENT, options={"priority": 10})
        worker.process_next(timeout=0)

        metrics = reporter.priority_metrics()

        assert [(m.priority, m.total, m.success_rate) for m in metrics] == [(90, 1, 0.0), (10, 1, 0.0)]
        assert metrics[0].average_seconds_to_publish is None

    def test_should_report_pause_in_snapshot(self, reporter, dispatch):
        dispatch.pause()

        assert reporter.snapshot().queue_paused is True


class TestHealthMonitor:
    """Health classification."""

    def test_should_be_unhealthy_without_workers(self, monitor):
        status = monitor.check()

        assert status.healthy is False
        assert status.checks.database is True
        assert status.checks.workers is False
        assert "No active publish workers" in status.warnings

    def test_should_be_healthy_with_live_worker(self, monitor, worker_registry):
        worker_registry.heartbeat("w-1")

        status = monitor.check()

        assert status.healthy is True
        assert status.stats.active_workers == 1
        assert status.warnings == []

    def test_should_warn_on_duplicate_dispatch(self, monitor, registry, dispatch, worker_registry):
        """Duplicate entries should warn without failing the check."""
        worker_registry.heartbeat("w-1")
        asset_id = registry.register(CONTENT).id
        dispatch.enqueue(asset_id)

        status = monitor.check()

        assert status.healthy is True
        assert status.stats.duplicate_dispatch == 1
        assert "1 assets have duplicate dispatch entries" in status.warnings

    def test_should_warn_on_exhausted_wallets(self, monitor, wallet_pool, worker_registry):
        worker_registry.heartbeat("w-1")
        wallet_pool.acquire("a")
        wallet_pool.acquire("b")

        status = monitor.check()

        assert status.healthy is True
        assert "No wallets available" in status.warnings

    def test_should_be_unhealthy_when_database_down(self, monitor, registry, worker_registry, mocker):
        worker_registry.heartbeat("w-1")
        mocker.patch.object(registry, "ping", side_effect=StoreUnavailable("registry"))

        status = monitor.check()

        assert status.healthy is False
        assert status.checks.database is False
        assert status.checks.queue is True
        assert any(w.startswith("Database unavailable") for w in status.warnings)


class TestOpsApi:
    """HTTP surface over the monitors and registry."""

    def test_should_return_503_when_unhealthy(self, client):
        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["healthy"] is False

    def test_should_return_200_when_healthy(self, client, worker_registry):
        worker_registry.heartbeat("w-1")

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["checks"]["workers"] is True

    def test_should_return_stats(self, client, registry):
        registry.register(CONTENT)

        body = client.get("/stats").json()

        assert body["total_assets"] == 1
        assert body["assets"]["queued"] == 1
        assert len(body["wallet_usage"]) == 2
        assert body["errors"] == []

    def test_should_return_asset_status(self, client, registry):
        asset_id = registry.register(CONTENT).id

        response = client.get(f"/assets/{asset_id}")

        assert response.status_code == 200
        assert response.json()["id"] == asset_id
        assert response.json()["status"] == "queued"

    def test_should_return_404_for_unknown_asset(self, client):
        assert client.get("/assets/does-not-exist").status_code == 404

    def test_should_list_attempts(self, client, registry, worker):
        asset_id = registry.register(CONTENT).id
        worker.process_next(timeout=0)

        attempts = client.get(f"/assets/{asset_id}/attempts").json()

        assert [a["status"] for a in attempts] == ["success"]

    def test_should_list_source_assets(self, client, registry):
        """Source listing should filter by status and paginate."""
        for _ in range(3):
            registry.register(CONTENT, {"source": "scraper"})
        registry.register(CONTENT, {"source": "manual"})

        body = client.get("/sources/scraper/assets", params={"limit": 2}).json()

        assert body["metrics"]["total_assets"] == 3
        assert len(body["assets"]) == 2
        filtered = client.get("/sources/scraper/assets", params={"status": "published"}).json()
        assert filtered["assets"] == []

    @pytest.mark.parametrize("params", [{"status": "bogus"}, {"limit": 0}, {"limit": 5000}])
    def test_should_reject_invalid_source_query(self, client, params):
        assert client.get("/sources/scraper/assets", params=params).status_code == 422

    def test_should_map_store_outage_to_503(self, client, registry, mocker):
        mocker.patch.object(
            registry, "get_counts_by_status", side_effect=StoreUnavailable("registry")
        )

        response = client.get("/stats")

        assert response.status_code == 503
        assert response.json()["error"] == "StoreUnavailable"

    def test_should_return_windowed_publishing_metrics(self, client, registry):
        registry.register(CONTENT)

        inside = client.get(
            "/metrics/publishing",
            params={"from": "2000-01-01T00:00:00", "to": "2100-01-01T00:00:00"},
        )
        outside = client.get("/metrics/publishing", params={"to": "2000-01-01T00:00:00Z"})

        assert inside.status_code == 200
        assert inside.json()["total_assets"] == 1
        assert inside.json()["by_status"]["queued"] == 1
        assert outside.json()["total_assets"] == 0

    @pytest.mark.parametrize(
        "params",
        [
            {"from": "2025-02-01T00:00:00", "to": "2025-01-01T00:00:00"},
            {"from": "not-a-date"},
        ],
    )
    def test_should_reject_invalid_window(self, client, params):
        assert client.get("/metrics/publishing", params=params).status_code == 422

    def test_should_return_hourly_and_priority_metrics(self, client, registry):
        registry.register(CONTENT, options={"priority": 70})

        hourly = client.get("/metrics/hourly", params={"hours": 6}).json()
        priority = client.get("/metrics/priority").json()

        assert [h["total"] for h in hourly] == [1]
        assert priority == [
            {
                "priority": 70,
                "total": 1,
                "published": 0,
                "average_seconds_to_publish": None,
                "success_rate": 0.0,
            }
        ]
        assert client.get("/metrics/hourly", params={"hours": 0}).status_code == 422

    def test_should_pause_and_resume_queue(self, client, dispatch):
        """The queue endpoints should flip the pause flag seen by workers."""
        assert client.post("/queue/pause").json() == {"paused": True}
        assert dispatch.is_paused() is True
        assert client.get("/queue").json()["paused"] is True
        assert client.get("/stats").json()["queue_paused"] is True

        assert client.post("/queue/resume").json() == {"paused": False}
        assert dispatch.is_paused() is False

    def test_should_expose_prometheus_metrics(self, client, registry):
        registry.register(CONTENT)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'publisher_assets{status="queued"} 1.0' in response.text
