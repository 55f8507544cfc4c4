"""
Debounced auto-save for in-progress assessments.

Rapid edits are coalesced into one save that runs ``delay`` seconds after
the last observed change. At most one save is in flight; a save requested
while another is running is deferred and then runs once with the latest
value.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Generic, TypeVar

import structlog
from src.libs.dates import utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class DebouncedAutoSave(Generic[T]):
    """Coalesce changes to a value into delayed calls of ``save``."""

    def __init__(
        self,
        save: Callable[[T], Awaitable[object]],
        *,
        delay: float = 2.0,
        enabled: bool = True,
        on_success: Callable[[T], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        name: str = "autosave",
    ) -> None:
        self._save = save
        self.delay = delay
        self.enabled = enabled
        self._on_success = on_success
        self._on_error = on_error
        self.name = name

        self._latest: T | None = None
        self._has_value = False
        self._last_saved_value: T | None = None
        self._has_saved = False

        self._timer: asyncio.TimerHandle | None = None
        self._in_flight: asyncio.Task[None] | None = None
        self._deferred = False
        self._closed = False

        self.is_saving = False
        self.last_saved: datetime | None = None
        self.error: Exception | None = None
        self.save_count = 0

    @property
    def has_unsaved_changes(self) -> bool:
        if not self._has_value:
            return False
        return not self._has_saved or self._latest != self._last_saved_value

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_saved(self, value: T) -> None:
        """Record ``value`` as the current, already persisted state.

        Used right after loading and after a write that bypassed the
        auto-save (such as a submission).
        """
        self._cancel_timer()
        self._last_saved_value = copy.deepcopy(value)
        self._has_saved = True
        self._latest = copy.deepcopy(value)
        self._has_value = True

    def notify(self, value: T) -> None:
        """Observe a new value and restart the debounce timer."""
        if self._closed:
            return
        self._latest = copy.deepcopy(value)
        self._has_value = True
        if not self.enabled:
            return

        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._on_timer)

    async def save_now(self) -> None:
        """Flush immediately, cancelling any pending timer.

        If a save is already running this waits for it and then for the
        deferred save of the latest value.
        """
        if self._closed:
            return
        self._cancel_timer()
        self._request_save()
        while self._in_flight is not None:
            await asyncio.shield(self._in_flight)

    def close(self) -> None:
        """Cancel the pending timer; an in-flight save finishes but is ignored."""
        self._closed = True
        self._deferred = False
        self._cancel_timer()

    async def wait_idle(self) -> None:
        while self._in_flight is not None:
            await asyncio.shield(self._in_flight)

    def status_text(self) -> str:
        if self.is_saving:
            return "saving…"
        if self.error is not None:
            return f"save failed: {self.error}"
        if self.has_unsaved_changes:
            return "unsaved changes"
        if self.last_saved is not None:
            return f"saved at {self.last_saved.strftime('%H:%M:%S')}"
        return "no changes"

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if not self._closed:
            self._request_save()

    def _request_save(self) -> None:
        if self._in_flight is not None:
            self._deferred = True
            return
        self._in_flight = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        try:
            while True:
                self._deferred = False
                if self._has_value and self.has_unsaved_changes:
                    await self._save_once(self._latest)  # type: ignore[arg-type]
                if not self._deferred or self._closed:
                    break
        finally:
            self._in_flight = None

    async def _save_once(self, value: T) -> None:
        snapshot = copy.deepcopy(value)
        self.is_saving = True
        self.error = None
        try:
            # The callee may mutate what it is given; keep the observed value intact.
            await self._save(copy.deepcopy(snapshot))
        except Exception as exc:
            self.is_saving = False
            if self._closed:
                logger.info("autosave_result_discarded", name=self.name, error=str(exc))
                return
            self.error = exc
            logger.warning("autosave_failed", name=self.name, error=str(exc))
            if self._on_error is not None:
                self._on_error(exc)
            return

        self.is_saving = False
        if self._closed:
            logger.info("autosave_result_discarded", name=self.name)
            return
        self._last_saved_value = snapshot
        self._has_saved = True
        self.last_saved = utcnow()
        self.save_count += 1
        if self._on_success is not None:
            self._on_success(snapshot)
