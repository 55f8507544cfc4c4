"""Durable storage for the offline action queue."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Protocol

import structlog
from redis.asyncio import Redis
from src.domain.models import ActionState, PendingAction, SyncError
from src.libs.dates import ensure_aware, utcnow

logger = structlog.get_logger(__name__)


class QueueStorage(Protocol):
    """Persists the live queue and its sync errors so neither is lost on restart."""

    async def load(self) -> list[PendingAction]:
        ...

    async def save(self, actions: list[PendingAction]) -> None:
        ...

    async def load_errors(self) -> list[SyncError]:
        ...

    async def save_errors(self, errors: list[SyncError]) -> None:
        ...

    async def ping(self) -> bool:
        ...


def action_to_dict(action: PendingAction) -> dict[str, Any]:
    return {
        "id": action.id,
        "type": action.type,
        "payload": action.payload,
        "created_at": action.created_at.isoformat(),
        "retry_count": action.retry_count,
        "priority": action.priority,
        "resource_key": action.resource_key,
        "state": action.state.value,
        "last_error": action.last_error,
        "sequence": action.sequence,
    }


def action_from_dict(data: dict[str, Any]) -> PendingAction:
    created_raw = data.get("created_at")
    try:
        created_at = ensure_aware(datetime.fromisoformat(created_raw)) if created_raw else utcnow()
    except ValueError:
        created_at = utcnow()

    state = ActionState(data.get("state", ActionState.PENDING.value))
    # Anything that was mid-flight or waiting on a timer when persisted is runnable again.
    if state in (ActionState.EXECUTING, ActionState.RETRYING):
        state = ActionState.PENDING

    return PendingAction(
        id=str(data["id"]),
        type=str(data["type"]),
        payload=dict(data.get("payload") or {}),
        created_at=created_at,
        retry_count=int(data.get("retry_count", 0)),
        priority=data.get("priority", "normal"),
        resource_key=data.get("resource_key"),
        state=state,
        last_error=data.get("last_error"),
        sequence=int(data.get("sequence", 0)),
    )


def error_to_dict(error: SyncError) -> dict[str, Any]:
    return {
        "action_id": error.action_id,
        "action_type": error.action_type,
        "message": error.message,
        "failed_at": error.failed_at.isoformat(),
        "attempts": error.attempts,
        "payload": error.payload,
        "resource_key": error.resource_key,
        "priority": error.priority,
    }


def error_from_dict(data: dict[str, Any]) -> SyncError:
    failed_raw = data.get("failed_at")
    try:
        failed_at = ensure_aware(datetime.fromisoformat(failed_raw)) if failed_raw else utcnow()
    except ValueError:
        failed_at = utcnow()
    return SyncError(
        action_id=str(data["action_id"]),
        action_type=str(data["action_type"]),
        message=str(data.get("message", "")),
        failed_at=failed_at,
        attempts=int(data.get("attempts", 1)),
        payload=dict(data.get("payload") or {}),
        resource_key=data.get("resource_key"),
        priority=data.get("priority", "normal"),
    )


class InMemoryQueueStorage:
    """Process-local storage; survives queue restarts within one process."""

    def __init__(self) -> None:
        self._items: list[dict[str, Any]] = []
        self._errors: list[dict[str, Any]] = []
        self.save_count = 0

    async def load(self) -> list[PendingAction]:
        return [action_from_dict(item) for item in self._items]

    async def save(self, actions: list[PendingAction]) -> None:
        self._items = [action_to_dict(action) for action in actions]
        self.save_count += 1

    async def load_errors(self) -> list[SyncError]:
        return [error_from_dict(item) for item in self._errors]

    async def save_errors(self, errors: list[SyncError]) -> None:
        self._errors = [error_to_dict(error) for error in errors]

    async def ping(self) -> bool:
        return True


class RedisQueueStorage:
    """Stores the queue under ``key`` and its sync errors under ``key:errors`` as JSON."""

    def __init__(self, client: Redis, key: str = "vendorsafety:pending-actions") -> None:
        self.client = client
        self.key = key
        self.errors_key = f"{key}:errors"

    @classmethod
    def from_url(cls, url: str, key: str = "vendorsafety:pending-actions") -> RedisQueueStorage:
        return cls(Redis.from_url(url), key=key)

    async def load(self) -> list[PendingAction]:
        return [action_from_dict(item) for item in await self._read(self.key)]

    async def save(self, actions: list[PendingAction]) -> None:
        payload = json.dumps([action_to_dict(action) for action in actions], default=str)
        await self.client.set(self.key, payload)

    async def load_errors(self) -> list[SyncError]:
        return [error_from_dict(item) for item in await self._read(self.errors_key)]

    async def save_errors(self, errors: list[SyncError]) -> None:
        payload = json.dumps([error_to_dict(error) for error in errors], default=str)
        await self.client.set(self.errors_key, payload)

    async def _read(self, key: str) -> list[dict[str, Any]]:
        raw = await self.client.get(key)
        if not raw:
            return []
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.error("queue_storage_corrupt", key=key)
            return []

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()
