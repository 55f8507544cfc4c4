from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel
from src.domain.models import PendingAction, SyncError
from src.domain.services.offline_queue import QueueSnapshot


class PendingActionResponse(BaseModel):
    id: str
    type: str
    resource_key: str | None = None
    priority: str
    state: str
    retry_count: int
    created_at: datetime
    last_error: str | None = None

    @classmethod
    def from_domain(cls, action: PendingAction) -> PendingActionResponse:
        return cls(
            id=action.id,
            type=action.type,
            resource_key=action.resource_key,
            priority=action.priority,
            state=action.state.value,
            retry_count=action.retry_count,
            created_at=action.created_at,
            last_error=action.last_error,
        )


class SyncErrorResponse(BaseModel):
    action_id: str
    action_type: str
    message: str
    failed_at: datetime
    attempts: int
    resource_key: str | None = None

    @classmethod
    def from_domain(cls, error: SyncError) -> SyncErrorResponse:
        return cls(
            action_id=error.action_id,
            action_type=error.action_type,
            message=error.message,
            failed_at=error.failed_at,
            attempts=error.attempts,
            resource_key=error.resource_key,
        )


class SyncStatusResponse(BaseModel):
    is_online: bool
    is_syncing: bool
    sync_status: str
    status_text: str
    pending_count: int
    last_sync: datetime | None = None
    pending_actions: list[PendingActionResponse]
    sync_errors: list[SyncErrorResponse]

    @classmethod
    def from_snapshot(cls, snapshot: QueueSnapshot) -> SyncStatusResponse:
        return cls(
            is_online=snapshot.is_online,
            is_syncing=snapshot.is_syncing,
            sync_status=snapshot.sync_status,
            status_text=snapshot.status_text(),
            pending_count=snapshot.pending_count,
            last_sync=snapshot.last_sync,
            pending_actions=[PendingActionResponse.from_domain(a) for a in snapshot.pending_actions],
            sync_errors=[SyncErrorResponse.from_domain(e) for e in snapshot.sync_errors],
        )


class ConnectivityRequest(BaseModel):
    online: bool


class DrainResponse(BaseModel):
    executed: int
    status: SyncStatusResponse
