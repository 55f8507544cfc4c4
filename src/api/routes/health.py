from __future__ import annotations

from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, Request
from src.api.deps import get_container
from src.core.container import Container
from src.domain.errors import StoreError

router = APIRouter(tags=["Observability"])
logger = structlog.get_logger()


async def check_store(container: Container) -> dict:
    """Check the document store connection."""
    try:
        await container.store.ping()
        return {"status": "ok", "backend": container.settings.store_backend}
    except (StoreError, OSError) as e:
        return {"status": "error", "message": str(e)[:100]}


async def check_queue_storage(container: Container) -> dict:
    """Check the offline queue storage (Redis in production)."""
    try:
        await container.queue_storage.ping()
        return {"status": "ok", "backend": container.settings.queue_storage}
    except Exception as e:
        return {"status": "error", "message": str(e)[:100]}


@router.get("/health", summary="Service health probe")
async def health_check(request: Request) -> dict:
    """Return service, datastore, breaker and sync queue status."""
    container = get_container(request)
    settings = container.settings

    store_status = await check_store(container)
    queue_storage_status = await check_queue_storage(container)
    breaker = container.breaker.stats()
    snapshot = container.queue.snapshot()

    overall_status = "ok"
    if (
        store_status.get("status") != "ok"
        or queue_storage_status.get("status") != "ok"
        or breaker.state != "closed"
    ):
        overall_status = "degraded"

    payload = {
        "service": settings.app_name,
        "version": settings.version,
        "status": overall_status,
        "timestamp": datetime.now(UTC).isoformat(),
        "datastores": {
            "store": store_status,
            "queue_storage": queue_storage_status,
        },
        "circuit_breaker": {
            "name": breaker.name,
            "state": breaker.state,
            "failure_count": breaker.failure_count,
            "window_failures": breaker.window_failures,
            "success_count": breaker.success_count,
            "average_latency_ms": breaker.average_latency_ms,
        },
        "sync": {
            "online": snapshot.is_online,
            "pending": snapshot.pending_count,
            "errors": len(snapshot.sync_errors),
            "status": snapshot.sync_status,
        },
    }
    logger.info("health_probe", status=overall_status)
    return payload
