"""
Composition root.

Builds every long-lived collaborator once per process from Settings: the
document store, the circuit breaker shared by all store calls, the date
parser cache, the form provider, the connectivity signal and probe, the
offline queue and the repository. The API keeps the container on
``app.state``; the sync worker builds its own.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine
from src.core.config import Settings
from src.domain.errors import (
    AssessmentNotFoundError,
    ConflictError,
    ImmutableAssessmentError,
    InvalidDocumentError,
    InvalidTransitionError,
    ValidationError,
)
from src.domain.services.connectivity import ConnectivitySignal
from src.domain.services.editing import EditingSessionRegistry
from src.domain.services.offline_queue import OfflineActionQueue
from src.infrastructure.db.base import Base
from src.infrastructure.db.session import create_engine, create_session_factory
from src.infrastructure.queue_storage import InMemoryQueueStorage, QueueStorage, RedisQueueStorage
from src.infrastructure.repositories.assessments import AssessmentRepository
from src.infrastructure.repositories.forms import StoreFormProvider
from src.infrastructure.store.base import DocumentStore
from src.infrastructure.store.memory import InMemoryDocumentStore
from src.infrastructure.store.sql import SqlDocumentStore
from src.libs.circuit_breaker import CircuitBreaker
from src.libs.dates import DateParser
from src.workers.connectivity import ConnectivityProbe

logger = structlog.get_logger()

# Domain outcomes, not store health: they never trip the breaker.
BREAKER_IGNORED = (
    AssessmentNotFoundError,
    ConflictError,
    ImmutableAssessmentError,
    InvalidDocumentError,
    InvalidTransitionError,
    ValidationError,
)

# Replaying these again cannot succeed.
PERMANENT_SYNC_ERRORS = (
    ImmutableAssessmentError,
    InvalidDocumentError,
    InvalidTransitionError,
    ValidationError,
)


@dataclass
class Container:
    settings: Settings
    store: DocumentStore
    breaker: CircuitBreaker
    date_parser: DateParser
    forms: StoreFormProvider
    connectivity: ConnectivitySignal
    probe: ConnectivityProbe | None
    queue_storage: QueueStorage
    queue: OfflineActionQueue
    repository: AssessmentRepository
    sessions: EditingSessionRegistry
    engine: AsyncEngine | None = None

    async def start(self) -> None:
        if self.engine is not None and self.settings.create_schema_on_startup:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        if self.probe is not None:
            await self.probe.check_once()
            self.probe.start()
        await self.queue.start()
        await logger.ainfo(
            "container_started",
            store_backend=self.settings.store_backend,
            queue_storage=self.settings.queue_storage,
            online=self.connectivity.is_online,
        )

    async def close(self) -> None:
        await self.sessions.close_all()
        if self.probe is not None:
            await self.probe.stop()
        await self.queue.close()
        if isinstance(self.queue_storage, RedisQueueStorage):
            await self.queue_storage.close()
        if self.engine is not None:
            await self.engine.dispose()
        await logger.ainfo("container_closed")


def build_container(
    settings: Settings,
    *,
    store: DocumentStore | None = None,
    queue_storage: QueueStorage | None = None,
    probe: bool = True,
) -> Container:
    engine: AsyncEngine | None = None
    if store is None:
        if settings.store_backend == "memory":
            store = InMemoryDocumentStore()
        elif settings.store_backend == "sql":
            engine = create_engine(settings)
            store = SqlDocumentStore(create_session_factory(engine))
        else:
            raise ValueError(f"Unknown store backend '{settings.store_backend}'")

    if queue_storage is None:
        if settings.queue_storage == "redis":
            queue_storage = RedisQueueStorage.from_url(
                settings.redis_url, key=settings.queue_storage_key
            )
        else:
            queue_storage = InMemoryQueueStorage()

    breaker = CircuitBreaker(
        "document-store",
        failure_threshold=settings.breaker_failure_threshold,
        reset_timeout=settings.breaker_reset_timeout_seconds,
        monitoring_period=settings.breaker_monitoring_period_seconds,
        ignored_exceptions=BREAKER_IGNORED,
    )
    date_parser = DateParser(max_size=settings.date_cache_size)
    forms = StoreFormProvider(store, breaker, ttl_seconds=settings.form_cache_ttl_seconds)
    connectivity = ConnectivitySignal()
    queue = OfflineActionQueue(
        connectivity,
        queue_storage,
        max_retries=settings.sync_max_retries,
        backoff_base=settings.sync_backoff_base_seconds,
        max_size=settings.sync_max_queue_size,
        max_sync_errors=settings.sync_max_errors,
        sync_interval=settings.sync_interval_seconds or None,
        permanent_errors=PERMANENT_SYNC_ERRORS,
    )
    repository = AssessmentRepository(
        store,
        breaker,
        forms,
        queue=queue,
        connectivity=connectivity,
        date_parser=date_parser,
        read_max_retries=settings.read_max_retries,
        read_base_delay=settings.read_base_delay_seconds,
    )
    sessions = EditingSessionRegistry(
        repository,
        autosave_delay=settings.autosave_delay_seconds,
        autosave_enabled=settings.autosave_enabled,
    )
    connectivity_probe = (
        ConnectivityProbe(
            store, connectivity, interval=settings.connectivity_probe_interval_seconds
        )
        if probe and settings.connectivity_probe_interval_seconds > 0
        else None
    )
    return Container(
        settings=settings,
        store=store,
        breaker=breaker,
        date_parser=date_parser,
        forms=forms,
        connectivity=connectivity,
        probe=connectivity_probe,
        queue_storage=queue_storage,
        queue=queue,
        repository=repository,
        sessions=sessions,
        engine=engine,
    )
