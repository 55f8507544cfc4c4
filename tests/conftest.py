from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from src.api.main import create_app
from src.core.config import Settings
from src.core.container import (
    BREAKER_IGNORED,
    PERMANENT_SYNC_ERRORS,
    Container,
    build_container,
)
from src.domain.models import FormDefinition
from src.domain.services.connectivity import ConnectivitySignal
from src.domain.services.offline_queue import OfflineActionQueue
from src.infrastructure.db.base import Base
from src.infrastructure.repositories.assessments import AssessmentRepository
from src.infrastructure.repositories.forms import StaticFormProvider
from src.infrastructure.store.memory import InMemoryDocumentStore
from src.infrastructure.store.sql import SqlDocumentStore
from src.libs.circuit_breaker import CircuitBreaker
from tests.utils import FlakyStore, build_form


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        STORE_BACKEND="memory",
        QUEUE_STORAGE="memory",
        JSON_LOGS=False,
        AUTOSAVE_DELAY_SECONDS=0.05,
        SYNC_INTERVAL_SECONDS=0,
        SYNC_BACKOFF_BASE_SECONDS=0.01,
        CONNECTIVITY_PROBE_INTERVAL_SECONDS=0,
        READ_BASE_DELAY_SECONDS=0,
    )


@pytest.fixture()
def form() -> FormDefinition:
    return build_form()


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def flaky_store(store: InMemoryDocumentStore) -> FlakyStore:
    return FlakyStore(store)


@pytest.fixture()
def breaker() -> CircuitBreaker:
    return CircuitBreaker(
        "test-store",
        failure_threshold=5,
        reset_timeout=60.0,
        ignored_exceptions=BREAKER_IGNORED,
    )


@pytest.fixture()
def connectivity() -> ConnectivitySignal:
    return ConnectivitySignal()


@pytest.fixture()
def queue(connectivity: ConnectivitySignal) -> OfflineActionQueue:
    return OfflineActionQueue(
        connectivity,
        backoff_base=0.01,
        sync_interval=None,
        permanent_errors=PERMANENT_SYNC_ERRORS,
    )


@pytest.fixture()
def repository(
    flaky_store: FlakyStore,
    breaker: CircuitBreaker,
    form: FormDefinition,
    queue: OfflineActionQueue,
    connectivity: ConnectivitySignal,
) -> AssessmentRepository:
    return AssessmentRepository(
        flaky_store,
        breaker,
        StaticFormProvider([form]),
        queue=queue,
        connectivity=connectivity,
        read_max_retries=2,
        read_base_delay=0,
    )


@pytest.fixture()
async def sql_store() -> AsyncIterator[SqlDocumentStore]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
        engine, expire_on_commit=False
    )
    yield SqlDocumentStore(session_factory)
    await engine.dispose()


@pytest.fixture()
def test_client(settings: Settings, store: InMemoryDocumentStore) -> Iterator[TestClient]:
    """API client over an in-memory store seeded with the checklist form."""

    def factory(app_settings: Settings) -> Container:
        return build_container(app_settings, store=store)

    app = create_app(settings, container_factory=factory)
    with TestClient(app) as client:
        container: Container = app.state.container
        client.portal.call(container.forms.save_form, build_form())  # type: ignore[union-attr]
        client.container = container  # type: ignore[attr-defined]
        yield client


@pytest.fixture()
async def async_client(settings: Settings, store: InMemoryDocumentStore) -> AsyncIterator[AsyncClient]:
    """Async HTTP client for tests that drive the app on the test's own loop."""
    container = build_container(settings, store=store)
    await container.start()
    await container.forms.save_form(build_form())
    app = create_app(settings)
    # ASGITransport does not run the lifespan.
    app.state.container = container
    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await container.close()
