"""Operations API: health, metrics, asset lookups and queue pause control."""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.status import (
    HTTP_404_NOT_FOUND,
    HTTP_422_UNPROCESSABLE_CONTENT,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from publisher.core.config import settings
from publisher.core.errors import AssetNotFound, StoreUnavailable
from publisher.core.logging import get_logger
from publisher.monitoring.health import HealthMonitor
from publisher.monitoring.reporter import MetricsReporter
from publisher.registry.types import AssetState, AssetStatusView
from publisher.worker.service import PublisherService

logger = get_logger(__name__).bind(module="ops_api")


def create_ops_router(service: PublisherService) -> APIRouter:
    """Build the ops router over a running (or inspect-only) service."""
    router = APIRouter(default_response_class=JSONResponse, tags=["ops"])
    reporter = MetricsReporter(
        service.registry,
        service.wallet_pool,
        service.dispatch,
        service.worker_registry,
        worker_ttl=service.config.WORKER_HEARTBEAT_TTL,
    )
    monitor = HealthMonitor(
        service.registry,
        service.wallet_pool,
        service.dispatch,
        service.worker_registry,
        worker_ttl=service.config.WORKER_HEARTBEAT_TTL,
        stuck_after=service.config.STUCK_PUBLISHING_SECONDS,
    )

    @router.get("/health")
    def health_check() -> JSONResponse:
        """Health of the stores and workers; 503 when unhealthy."""
        status = monitor.check()
        return JSONResponse(
            status_code=200 if status.healthy else HTTP_503_SERVICE_UNAVAILABLE,
            content=status.model_dump(mode="json"),
        )

    @router.get("/stats")
    def stats() -> dict[str, Any]:
        """Counts by status, wallet and queue stats."""
        snapshot = reporter.snapshot()
        return {
            **snapshot.model_dump(mode="json"),
            "wallet_usage": [u.model_dump(mode="json") for u in reporter.wallet_usage()],
            "errors": [
                {**e, "last_seen": e["last_seen"].isoformat() if e["last_seen"] else None}
                for e in reporter.error_distribution()
            ],
        }

    @router.get("/assets/{asset_id}", response_model=AssetStatusView)
    def get_asset(asset_id: str) -> AssetStatusView:
        try:
            return service.registry.get_status(asset_id)
        except AssetNotFound:
            raise HTTPException(status_code=HTTP_404_NOT_FOUND, detail="Asset not found")

    @router.get("/assets/{asset_id}/attempts")
    def get_attempts(asset_id: str) -> list[dict[str, Any]]:
        return [a.model_dump(mode="json") for a in service.registry.get_attempts(asset_id)]

    @router.get("/sources/{source}/assets")
    def get_source_assets(
        source: str,
        status: Optional[str] = Query(None, description="Filter by lifecycle state"),
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ) -> dict[str, Any]:
        """A source's assets, newest first, with its aggregate metrics."""
        if status is not None and status not in {s.value for s in AssetState}:
            raise HTTPException(
                status_code=HTTP_422_UNPROCESSABLE_CONTENT,
                detail=f"Unknown status: {status}",
            )
        assets = service.registry.get_by_source(
            source, status=status, limit=limit, offset=offset
        )
        return {
            "metrics": reporter.source_metrics(source).model_dump(mode="json"),
            "assets": [a.model_dump(mode="json") for a in assets],
        }

    @router.get("/metrics/publishing")
    def publishing_metrics(
        created_from: Optional[datetime] = Query(None, alias="from"),
        created_to: Optional[datetime] = Query(None, alias="to"),
    ) -> dict[str, Any]:
        """Status breakdown of assets created between ``from`` and ``to``."""
        try:
            metrics = reporter.publishing_metrics(created_from, created_to)
        except ValueError as e:
            raise HTTPException(status_code=HTTP_422_UNPROCESSABLE_CONTENT, detail=str(e))
        return metrics.model_dump(mode="json")

    @router.get("/metrics/hourly")
    def hourly_stats(hours: int = Query(24, ge=1, le=24 * 31)) -> list[dict[str, Any]]:
        return [s.model_dump(mode="json") for s in reporter.hourly_stats(hours)]

    @router.get("/metrics/priority")
    def priority_metrics() -> list[dict[str, Any]]:
        return [m.model_dump(mode="json") for m in reporter.priority_metrics()]

    @router.get("/queue")
    def queue_status() -> dict[str, Any]:
        return {
            "paused": service.dispatch.is_paused(),
            **service.dispatch.stats().model_dump(),
        }

    @router.post("/queue/pause")
    def pause_queue() -> dict[str, Any]:
        """Stop workers from taking new entries until resumed."""
        service.dispatch.pause()
        return {"paused": True}

    @router.post("/queue/resume")
    def resume_queue() -> dict[str, Any]:
        service.dispatch.resume()
        return {"paused": False}

    @router.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        """Expose Prometheus metrics."""
        try:
            reporter.snapshot()
        except StoreUnavailable as e:
            logger.warning("Serving stale gauges; snapshot failed", error=str(e))
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return router


def create_ops_app(service: PublisherService) -> FastAPI:
    """Standalone ops application used by ``serve-ops``."""
    app = FastAPI(
        title=f"{settings.app_name} ops",
        version=settings.version,
        default_response_class=JSONResponse,
    )

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable) -> JSONResponse:
        logger.error("Store unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "StoreUnavailable", "message": str(exc)},
        )

    app.include_router(create_ops_router(service))
    return app
