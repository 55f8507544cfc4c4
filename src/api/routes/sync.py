from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from src.api.deps import get_container, get_queue
from src.api.schemas.sync import ConnectivityRequest, DrainResponse, SyncStatusResponse
from src.domain.services.offline_queue import OfflineActionQueue, QueueClosedError

router = APIRouter(prefix="/sync", tags=["Sync"])
logger = structlog.get_logger()


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(queue: OfflineActionQueue = Depends(get_queue)) -> SyncStatusResponse:
    return SyncStatusResponse.from_snapshot(queue.snapshot())


@router.post("/drain", response_model=DrainResponse)
async def drain_queue(queue: OfflineActionQueue = Depends(get_queue)) -> DrainResponse:
    """Replay every ready pending action now."""
    executed = await queue.drain()
    await queue.wait_idle()
    return DrainResponse(executed=executed, status=SyncStatusResponse.from_snapshot(queue.snapshot()))


@router.post("/errors/{action_id}/retry", response_model=SyncStatusResponse)
async def retry_sync_error(
    action_id: str, queue: OfflineActionQueue = Depends(get_queue)
) -> SyncStatusResponse:
    try:
        await queue.retry_failed(action_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"No sync error for action {action_id}"
        ) from exc
    except QueueClosedError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SyncStatusResponse.from_snapshot(queue.snapshot())


@router.delete("/errors", response_model=SyncStatusResponse)
async def clear_sync_errors(queue: OfflineActionQueue = Depends(get_queue)) -> SyncStatusResponse:
    await queue.clear_sync_errors()
    return SyncStatusResponse.from_snapshot(queue.snapshot())


@router.put("/connectivity", response_model=SyncStatusResponse)
async def set_connectivity(payload: ConnectivityRequest, request: Request) -> SyncStatusResponse:
    """Override the connectivity signal (maintenance windows, manual recovery)."""
    container = get_container(request)
    container.connectivity.set_online(payload.online)
    logger.info("connectivity_overridden", online=payload.online)
    return SyncStatusResponse.from_snapshot(container.queue.snapshot())
