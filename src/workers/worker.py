from __future__ import annotations

import asyncio
import logging

import structlog
from src.core.config import get_settings
from src.core.container import build_container
from src.core.logging import setup_logging

logger = structlog.get_logger()


async def main() -> None:
    """Replay pending writes persisted by API processes.

    Useful when an API process stopped with queued actions: the worker loads
    them from the shared queue storage and drains them once the store is
    reachable.
    """
    settings = get_settings()
    setup_logging(logging.INFO, json_logs=settings.json_logs)
    container = build_container(settings)
    logger.info(
        "sync_worker_bootstrap",
        queue_storage=settings.queue_storage,
        sync_interval=settings.sync_interval_seconds,
    )
    await container.start()
    try:
        while True:
            if container.connectivity.is_online:
                await container.queue.drain()
            await asyncio.sleep(settings.sync_interval_seconds or 30.0)
    finally:
        await container.close()


if __name__ == "__main__":
    asyncio.run(main())
