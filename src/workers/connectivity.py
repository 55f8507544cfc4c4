from __future__ import annotations

import asyncio

import structlog
from src.domain.errors import StoreError
from src.domain.services.connectivity import ConnectivitySignal
from src.infrastructure.store.base import DocumentStore

logger = structlog.get_logger()


class ConnectivityProbe:
    """Pings the document store and drives the shared connectivity signal."""

    def __init__(
        self,
        store: DocumentStore,
        signal: ConnectivitySignal,
        *,
        interval: float = 15.0,
        timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.signal = signal
        self.interval = interval
        self.timeout = timeout
        self._task: asyncio.Task[None] | None = None

    async def check_once(self) -> bool:
        try:
            online = bool(await asyncio.wait_for(self.store.ping(), timeout=self.timeout))
        except (StoreError, TimeoutError, OSError) as exc:
            await logger.awarning("connectivity_probe_failed", error=str(exc))
            online = False
        self.signal.set_online(online)
        return online

    async def run(self) -> None:
        while True:
            await self.check_once()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
