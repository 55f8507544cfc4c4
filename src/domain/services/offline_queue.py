"""
Offline action queue.

Write intents that could not reach the store are queued here and replayed
when connectivity is available. Each action moves through
pending -> executing -> done | retrying | failed. Failed executions are
retried with exponential backoff (``backoff_base * 2**retry_count``). After
``max_retries`` failed attempts, or on an error listed in
``permanent_errors``, the action moves to ``sync_errors`` and is only
retried on request.
"""

from __future__ import annotations

import asyncio
import copy
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Literal

import structlog
from src.domain.models import ActionState, PendingAction, Priority, SyncError
from src.domain.services.connectivity import ConnectivitySignal
from src.infrastructure.queue_storage import InMemoryQueueStorage, QueueStorage
from src.libs.dates import utcnow

logger = structlog.get_logger(__name__)

ActionHandler = Callable[[dict[str, Any]], Awaitable[object]]
SyncStatus = Literal["idle", "syncing", "error", "success"]

PRIORITY_ORDER: dict[str, int] = {"high": 0, "normal": 1, "low": 2}


class QueueClosedError(Exception):
    """Raised when enqueueing into a queue that has been closed."""


@dataclass(slots=True)
class QueueSnapshot:
    """Observable queue state for UI binding."""

    pending_actions: list[PendingAction]
    is_syncing: bool
    sync_errors: list[SyncError]
    last_sync: datetime | None
    sync_status: SyncStatus
    is_online: bool

    @property
    def pending_count(self) -> int:
        return len(self.pending_actions)

    def status_text(self) -> str:
        if not self.is_online:
            return f"offline, {self.pending_count} changes pending"
        if self.is_syncing:
            return f"syncing {self.pending_count} changes"
        if self.sync_errors:
            return f"{len(self.sync_errors)} changes failed to sync"
        if self.pending_count:
            return f"{self.pending_count} changes pending"
        return "all changes synced"


QueueListener = Callable[[QueueSnapshot], None]


class OfflineActionQueue:
    """Durable queue of pending mutations with retry and backoff."""

    def __init__(
        self,
        connectivity: ConnectivitySignal,
        storage: QueueStorage | None = None,
        *,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        max_size: int = 100,
        max_sync_errors: int = 50,
        sync_interval: float | None = 30.0,
        permanent_errors: tuple[type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connectivity = connectivity
        self.storage: QueueStorage = storage or InMemoryQueueStorage()
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.max_size = max_size
        self.max_sync_errors = max_sync_errors
        self.sync_interval = sync_interval
        # Errors that no amount of retrying fixes go straight to sync_errors.
        self.permanent_errors = permanent_errors
        self._clock = clock

        self._handlers: dict[str, ActionHandler] = {}
        self._listeners: list[QueueListener] = []
        self._actions: list[PendingAction] = []
        self._errors: list[SyncError] = []
        self._sequence = 0

        self._active = True
        self._started = False
        self._is_syncing = False
        self._drain_requested = False
        self._drain_task: asyncio.Task[int] | None = None
        self._periodic_task: asyncio.Task[None] | None = None
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}
        self._unsubscribe_connectivity: Callable[[], None] | None = None

        self.last_sync: datetime | None = None
        self.sync_status: SyncStatus = "idle"

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def pending_actions(self) -> list[PendingAction]:
        return [replace(action) for action in self._actions]

    @property
    def sync_errors(self) -> list[SyncError]:
        return list(self._errors)

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def is_active(self) -> bool:
        return self._active

    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(
            pending_actions=self.pending_actions,
            is_syncing=self._is_syncing,
            sync_errors=self.sync_errors,
            last_sync=self.last_sync,
            sync_status=self.sync_status,
            is_online=self.connectivity.is_online,
        )

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._active or not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register_handler(self, action_type: str, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    async def start(self) -> None:
        """Reload persisted actions, subscribe to connectivity and start the periodic drain."""
        if self._started:
            return
        self._started = True
        stored = await self.storage.load()
        known = {action.id for action in self._actions}
        for action in stored:
            if action.id not in known:
                self._actions.append(action)
        known_errors = {error.action_id for error in self._errors}
        stored_errors = [
            error
            for error in await self.storage.load_errors()
            if error.action_id not in known_errors
        ]
        self._errors[:0] = stored_errors
        del self._errors[: max(0, len(self._errors) - self.max_sync_errors)]
        self._sequence = max([self._sequence, *(a.sequence for a in self._actions)])
        if stored or stored_errors:
            logger.info(
                "offline_queue_restored", count=len(stored), sync_errors=len(stored_errors)
            )

        self._unsubscribe_connectivity = self.connectivity.subscribe(self._on_connectivity)
        if self.sync_interval:
            self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_drain())
        self._notify()
        if self.connectivity.is_online and self._actions:
            self._schedule_drain()

    async def close(self) -> None:
        """Stop consuming. Calls already dispatched complete; nothing new starts."""
        self._active = False
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None
        for timer in self._retry_timers.values():
            timer.cancel()
        self._retry_timers.clear()
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None
        if self._drain_task is not None and not self._drain_task.done():
            # The running write finishes; the drain loop stops after it.
            await asyncio.wait({self._drain_task})
        await self._persist()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        action_type: str,
        payload: dict[str, Any],
        *,
        resource_key: str | None = None,
        priority: Priority = "normal",
    ) -> PendingAction:
        """Queue a write intent.

        A pending action for the same ``resource_key`` is collapsed to the new
        payload instead of queueing a stale intermediate state.
        """
        if not self._active:
            raise QueueClosedError("Offline queue is closed")
        if priority not in PRIORITY_ORDER:
            raise ValueError(f"Unknown priority '{priority}'")

        action = self._find_collapsible(action_type, resource_key)
        if action is not None:
            action.payload = copy.deepcopy(payload)
            if PRIORITY_ORDER[priority] < PRIORITY_ORDER[action.priority]:
                action.priority = priority
            logger.info(
                "pending_action_collapsed",
                action_id=action.id,
                action_type=action_type,
                resource_key=resource_key,
            )
        else:
            self._sequence += 1
            action = PendingAction(
                id=str(uuid.uuid4()),
                type=action_type,
                payload=copy.deepcopy(payload),
                created_at=utcnow(),
                priority=priority,
                resource_key=resource_key,
                sequence=self._sequence,
            )
            self._actions.append(action)
            logger.info(
                "pending_action_enqueued",
                action_id=action.id,
                action_type=action_type,
                resource_key=resource_key,
                priority=priority,
                queue_size=len(self._actions),
            )
            self._evict_overflow()

        await self._persist()
        self._notify()
        if self.connectivity.is_online:
            self._schedule_drain()
        return replace(action)

    async def retry_failed(self, action_id: str) -> PendingAction:
        """Manually re-queue an action from ``sync_errors`` with a fresh retry budget."""
        error = next((e for e in self._errors if e.action_id == action_id), None)
        if error is None:
            raise KeyError(action_id)
        self._errors.remove(error)
        logger.info("sync_error_retried", action_id=action_id, action_type=error.action_type)
        return await self.enqueue(
            error.action_type,
            error.payload,
            resource_key=error.resource_key,
            priority=error.priority,
        )

    async def discard(self, action_type: str, resource_key: str) -> int:
        """Drop waiting actions for ``resource_key`` that a direct write has overtaken."""
        stale = [
            action
            for action in self._actions
            if action.type == action_type
            and action.resource_key == resource_key
            and action.state in (ActionState.PENDING, ActionState.RETRYING)
        ]
        if not stale:
            return 0
        for action in stale:
            self._remove(action)
            logger.info(
                "pending_action_superseded",
                action_id=action.id,
                action_type=action_type,
                resource_key=resource_key,
            )
        await self._persist()
        self._notify()
        return len(stale)

    async def clear_sync_errors(self) -> None:
        self._errors.clear()
        if self.sync_status == "error":
            self.sync_status = "idle"
        await self._persist()
        self._notify()

    def _find_collapsible(self, action_type: str, resource_key: str | None) -> PendingAction | None:
        if resource_key is None:
            return None
        for action in self._actions:
            if (
                action.resource_key == resource_key
                and action.type == action_type
                and action.state in (ActionState.PENDING, ActionState.RETRYING)
            ):
                return action
        return None

    def _evict_overflow(self) -> None:
        while len(self._actions) > self.max_size:
            candidates = [a for a in self._actions if a.state != ActionState.EXECUTING]
            if not candidates:
                return
            oldest = min(candidates, key=lambda a: a.sequence)
            self._remove(oldest)
            logger.warning(
                "pending_action_evicted",
                action_id=oldest.id,
                action_type=oldest.type,
                max_size=self.max_size,
            )
            self._record_error(oldest, "Evicted: offline queue is full")

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    def _on_connectivity(self, online: bool) -> None:
        self._notify()
        if online:
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        if not self._active:
            return
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_requested = True
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: the next start() or periodic drain picks the work up.
            return
        self._drain_task = loop.create_task(self.drain())

    async def wait_idle(self) -> None:
        """Wait for the current drain (and any drain it re-triggers) to finish."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def drain(self) -> int:
        """Execute every ready pending action in priority/FIFO order.

        Returns the number of actions that completed successfully.
        """
        if not self._active or not self.connectivity.is_online:
            return 0
        if self._is_syncing:
            self._drain_requested = True
            return 0

        self._is_syncing = True
        self.sync_status = "syncing"
        self._notify()
        succeeded = 0
        failed = 0
        try:
            while self._active and self.connectivity.is_online:
                action = self._next_ready()
                if action is None:
                    break
                if await self._execute(action):
                    succeeded += 1
                else:
                    failed += 1
        finally:
            self._is_syncing = False
            self.last_sync = utcnow()
            self.sync_status = "error" if failed or self._errors else "success"
            self._notify()

        if self._drain_requested and self._active and self.connectivity.is_online:
            self._drain_requested = False
            if self._next_ready() is not None:
                return succeeded + await self.drain()
        return succeeded

    def _next_ready(self) -> PendingAction | None:
        now = self._clock()
        ready = [
            a
            for a in self._actions
            if a.state == ActionState.PENDING and a.next_attempt_at <= now
        ]
        if not ready:
            return None
        return min(ready, key=lambda a: (PRIORITY_ORDER.get(a.priority, 1), a.sequence))

    async def _execute(self, action: PendingAction) -> bool:
        handler = self._handlers.get(action.type)
        if handler is None:
            logger.error("pending_action_no_handler", action_id=action.id, action_type=action.type)
            self._remove(action)
            self._record_error(action, f"No handler registered for '{action.type}'")
            await self._persist()
            return False

        action.state = ActionState.EXECUTING
        self._notify()
        try:
            await handler(copy.deepcopy(action.payload))
        except Exception as exc:
            self._on_action_failed(action, exc)
            await self._persist()
            self._notify()
            return False
        except BaseException:
            # Interrupted mid-call: the action runs again on the next drain.
            action.state = ActionState.PENDING
            raise

        action.state = ActionState.DONE
        self._remove(action)
        logger.info(
            "pending_action_executed",
            action_id=action.id,
            action_type=action.type,
            retry_count=action.retry_count,
        )
        await self._persist()
        self._notify()
        return True

    def _on_action_failed(self, action: PendingAction, exc: Exception) -> None:
        action.last_error = str(exc)
        retryable = not isinstance(exc, self.permanent_errors)
        # max_retries bounds the total number of attempts.
        if retryable and action.retry_count + 1 < self.max_retries and not self._active:
            # Closing: keep it pending for the next start() instead of arming a timer.
            action.retry_count += 1
            action.state = ActionState.PENDING
            return
        if retryable and action.retry_count + 1 < self.max_retries:
            delay = self.backoff_base * (2**action.retry_count)
            action.retry_count += 1
            action.state = ActionState.RETRYING
            action.next_attempt_at = self._clock() + delay
            self._retry_timers[action.id] = asyncio.get_running_loop().call_later(
                delay, self._on_retry_due, action.id
            )
            logger.warning(
                "pending_action_retry_scheduled",
                action_id=action.id,
                action_type=action.type,
                retry_count=action.retry_count,
                delay_seconds=delay,
                error=str(exc),
            )
            return

        action.state = ActionState.FAILED
        self._remove(action)
        self._record_error(action, str(exc))
        logger.error(
            "pending_action_failed",
            action_id=action.id,
            action_type=action.type,
            attempts=action.retry_count + 1,
            error=str(exc),
        )

    def _on_retry_due(self, action_id: str) -> None:
        self._retry_timers.pop(action_id, None)
        action = next((a for a in self._actions if a.id == action_id), None)
        if action is None or action.state != ActionState.RETRYING:
            return
        action.state = ActionState.PENDING
        action.next_attempt_at = 0.0
        self._notify()
        if self.connectivity.is_online:
            self._schedule_drain()

    async def _periodic_drain(self) -> None:
        assert self.sync_interval
        while self._active:
            await asyncio.sleep(self.sync_interval)
            if self._active and self.connectivity.is_online and self._actions:
                # Scheduled, not awaited: cancelling this loop must not cancel a running write.
                self._schedule_drain()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _remove(self, action: PendingAction) -> None:
        if action in self._actions:
            self._actions.remove(action)
        timer = self._retry_timers.pop(action.id, None)
        if timer is not None:
            timer.cancel()

    def _record_error(self, action: PendingAction, message: str) -> None:
        self._errors.append(
            SyncError(
                action_id=action.id,
                action_type=action.type,
                message=f"Failed to execute {action.type}: {message}",
                failed_at=utcnow(),
                attempts=action.retry_count + 1,
                payload=copy.deepcopy(action.payload),
                resource_key=action.resource_key,
                priority=action.priority,
            )
        )
        if len(self._errors) > self.max_sync_errors:
            del self._errors[: len(self._errors) - self.max_sync_errors]

    async def _persist(self) -> None:
        try:
            await self.storage.save(list(self._actions))
            await self.storage.save_errors(list(self._errors))
        except Exception as exc:
            # The in-memory queue stays authoritative; the next mutation retries the write.
            logger.warning("offline_queue_persist_failed", error=str(exc))
