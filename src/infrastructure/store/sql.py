"""
Document store backed by a single SQL table (SQLAlchemy async).

Documents are kept as JSON; filtering and ordering run in Python after the
collection is loaded, so any SQLAlchemy dialect works (PostgreSQL through
asyncpg in production, SQLite through aiosqlite in tests).
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Any

import structlog
from sqlalchemy import delete, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from src.domain.errors import ConflictError, StoreError
from src.infrastructure.db.models import DocumentRecord
from src.infrastructure.store.base import (
    OrderBy,
    QueryFilter,
    StoredDocument,
    StoreTimestamp,
    apply_query,
)

logger = structlog.get_logger(__name__)


def encode_value(value: Any) -> Any:
    """JSON-compatible form of a document value."""
    if isinstance(value, StoreTimestamp):
        return value.to_json()
    if isinstance(value, dict):
        return {key: encode_value(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [encode_value(item) for item in value]
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {"seconds", "nanoseconds"}:
            return StoreTimestamp(seconds=int(value["seconds"]), nanoseconds=int(value["nanoseconds"]))
        return {key: decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_value(item) for item in value]
    return value


class SqlDocumentStore:
    """DocumentStore implementation over the ``documents`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_document(self, collection: str, document_id: str) -> StoredDocument | None:
        try:
            async with self.session_factory() as session:
                record = await session.get(DocumentRecord, (collection, document_id))
                if record is None:
                    return None
                return StoredDocument(id=record.id, data=decode_value(record.data))
        except SQLAlchemyError as exc:
            raise self._store_error("get", collection, exc) from exc

    async def query_documents(
        self,
        collection: str,
        filters: Sequence[QueryFilter] = (),
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
    ) -> list[StoredDocument]:
        stmt = (
            select(DocumentRecord)
            .where(DocumentRecord.collection == collection)
            .order_by(DocumentRecord.created_at)
        )
        try:
            async with self.session_factory() as session:
                records = list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as exc:
            raise self._store_error("query", collection, exc) from exc

        documents = [
            StoredDocument(id=record.id, data=decode_value(record.data)) for record in records
        ]
        return apply_query(documents, filters, order_by, limit)

    async def create_document(self, collection: str, data: dict[str, Any]) -> str:
        document_id = uuid.uuid4().hex
        try:
            async with self.session_factory() as session:
                session.add(
                    DocumentRecord(collection=collection, id=document_id, data=encode_value(data))
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise self._store_error("create", collection, exc) from exc
        return document_id

    async def update_document(
        self, collection: str, document_id: str, partial_data: dict[str, Any]
    ) -> None:
        try:
            async with self.session_factory() as session:
                record = await session.get(DocumentRecord, (collection, document_id))
                if record is None:
                    raise ConflictError(f"Document {collection}/{document_id} does not exist")
                # Reassign so the JSON column is flagged as modified.
                record.data = {**record.data, **encode_value(partial_data)}
                await session.commit()
        except SQLAlchemyError as exc:
            raise self._store_error("update", collection, exc) from exc

    async def delete_document(self, collection: str, document_id: str) -> None:
        stmt = delete(DocumentRecord).where(
            DocumentRecord.collection == collection,
            DocumentRecord.id == document_id,
        )
        try:
            async with self.session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise self._store_error("delete", collection, exc) from exc

    async def ping(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise self._store_error("ping", "-", exc) from exc
        return True

    @staticmethod
    def _store_error(operation: str, collection: str, exc: Exception) -> StoreError:
        logger.warning(
            "document_store_error",
            operation=operation,
            collection=collection,
            error=str(exc)[:200],
        )
        return StoreError(f"Document store {operation} on '{collection}' failed: {exc}")
