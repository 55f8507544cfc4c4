from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from src.domain.errors import ConflictError
from src.infrastructure.db.base import Base
from src.infrastructure.store.base import OrderBy, QueryFilter, StoreTimestamp
from src.infrastructure.store.memory import InMemoryDocumentStore
from src.infrastructure.store.sql import SqlDocumentStore, decode_value, encode_value


@pytest.fixture(params=["memory", "sql"])
async def any_store(request: pytest.FixtureRequest) -> AsyncIterator[Any]:
    if request.param == "memory":
        yield InMemoryDocumentStore()
        return

    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SqlDocumentStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


async def _seed(store: Any) -> dict[str, str]:
    ids = {}
    for vendor, score, active in (("V001", 1.5, True), ("V002", 0.5, True), ("V003", 1.0, False)):
        ids[vendor] = await store.create_document(
            "csmAssessments", {"vdCode": vendor, "avgScore": score, "isActive": active}
        )
    return ids


class TestDocumentStore:
    @pytest.mark.asyncio
    async def test_create_then_get(self, any_store: Any) -> None:
        document_id = await any_store.create_document(
            "csmAssessments", {"vdCode": "V001", "auditor": {"name": "Dewi"}}
        )

        document = await any_store.get_document("csmAssessments", document_id)

        assert document is not None
        assert document.id == document_id
        assert document.data["auditor"] == {"name": "Dewi"}

    @pytest.mark.asyncio
    async def test_missing_document_returns_none(self, any_store: Any) -> None:
        assert await any_store.get_document("csmAssessments", "nope") is None

    @pytest.mark.asyncio
    async def test_collections_are_isolated(self, any_store: Any) -> None:
        document_id = await any_store.create_document("forms", {"formCode": "CSMChecklist"})

        assert await any_store.get_document("csmAssessments", document_id) is None
        assert await any_store.query_documents("csmAssessments") == []

    @pytest.mark.asyncio
    async def test_query_filters_orders_and_limits(self, any_store: Any) -> None:
        await _seed(any_store)

        active = await any_store.query_documents(
            "csmAssessments",
            [QueryFilter("isActive", "==", True)],
            [OrderBy("avgScore", "desc")],
        )
        assert [doc.data["vdCode"] for doc in active] == ["V001", "V002"]

        lowest = await any_store.query_documents(
            "csmAssessments", order_by=[OrderBy("avgScore")], limit=1
        )
        assert [doc.data["vdCode"] for doc in lowest] == ["V002"]

        chosen = await any_store.query_documents(
            "csmAssessments", [QueryFilter("vdCode", "in", ["V001", "V003"])]
        )
        assert {doc.data["vdCode"] for doc in chosen} == {"V001", "V003"}

    @pytest.mark.asyncio
    async def test_update_merges_top_level_fields(self, any_store: Any) -> None:
        document_id = await any_store.create_document(
            "csmAssessments", {"vdCode": "V001", "status": "in-progress"}
        )

        await any_store.update_document("csmAssessments", document_id, {"status": "completed"})

        document = await any_store.get_document("csmAssessments", document_id)
        assert document is not None
        assert document.data == {"vdCode": "V001", "status": "completed"}

    @pytest.mark.asyncio
    async def test_update_of_missing_document_conflicts(self, any_store: Any) -> None:
        with pytest.raises(ConflictError):
            await any_store.update_document("csmAssessments", "gone", {"status": "completed"})

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, any_store: Any) -> None:
        document_id = await any_store.create_document("csmAssessments", {"vdCode": "V001"})

        await any_store.delete_document("csmAssessments", document_id)
        await any_store.delete_document("csmAssessments", document_id)

        assert await any_store.get_document("csmAssessments", document_id) is None

    @pytest.mark.asyncio
    async def test_timestamps_round_trip_and_sort(self, any_store: Any) -> None:
        early = StoreTimestamp.from_datetime(datetime(2024, 1, 1, tzinfo=UTC))
        late = StoreTimestamp.from_datetime(datetime(2024, 6, 1, 12, 30, tzinfo=UTC))
        await any_store.create_document("csmAssessments", {"vdCode": "V001", "createdAt": early})
        await any_store.create_document("csmAssessments", {"vdCode": "V002", "createdAt": late})

        [latest] = await any_store.query_documents(
            "csmAssessments", order_by=[OrderBy("createdAt", "desc")], limit=1
        )

        assert latest.data["vdCode"] == "V002"
        assert latest.data["createdAt"] == late

    @pytest.mark.asyncio
    async def test_ping(self, any_store: Any) -> None:
        assert await any_store.ping() is True


def test_store_timestamp_keeps_microseconds() -> None:
    moment = datetime(2024, 3, 1, 8, 15, 30, 250000, tzinfo=UTC)

    stamp = StoreTimestamp.from_datetime(moment)

    assert stamp.nanoseconds == 250_000_000
    assert stamp.to_datetime() == moment


def test_json_encoding_of_nested_timestamps() -> None:
    stamp = StoreTimestamp(seconds=1_700_000_000)
    data = {"answers": [{"uploadedAt": stamp}], "createdAt": stamp}

    encoded = encode_value(data)

    assert encoded["createdAt"] == {"seconds": 1_700_000_000, "nanoseconds": 0}
    assert decode_value(encoded) == data


def test_filters_skip_missing_fields_for_comparisons() -> None:
    assert not QueryFilter("avgScore", ">", 1).matches({"vdCode": "V001"})
    assert QueryFilter("auditor.name", "==", "Dewi").matches({"auditor": {"name": "Dewi"}})
