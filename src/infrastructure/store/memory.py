from __future__ import annotations

import copy
import uuid
from collections.abc import Sequence
from typing import Any

import structlog
from src.domain.errors import ConflictError
from src.infrastructure.store.base import OrderBy, QueryFilter, StoredDocument, apply_query

logger = structlog.get_logger(__name__)


class InMemoryDocumentStore:
    """Dictionary-backed document store for local runs and tests."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def get_document(self, collection: str, document_id: str) -> StoredDocument | None:
        data = self._collection(collection).get(document_id)
        if data is None:
            return None
        return StoredDocument(id=document_id, data=copy.deepcopy(data))

    async def query_documents(
        self,
        collection: str,
        filters: Sequence[QueryFilter] = (),
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
    ) -> list[StoredDocument]:
        documents = [
            StoredDocument(id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in self._collection(collection).items()
        ]
        return apply_query(documents, filters, order_by, limit)

    async def create_document(self, collection: str, data: dict[str, Any]) -> str:
        document_id = uuid.uuid4().hex
        self._collection(collection)[document_id] = copy.deepcopy(data)
        return document_id

    async def update_document(
        self, collection: str, document_id: str, partial_data: dict[str, Any]
    ) -> None:
        documents = self._collection(collection)
        if document_id not in documents:
            raise ConflictError(f"Document {collection}/{document_id} does not exist")
        documents[document_id].update(copy.deepcopy(partial_data))

    async def delete_document(self, collection: str, document_id: str) -> None:
        self._collection(collection).pop(document_id, None)

    async def ping(self) -> bool:
        return True

    def count(self, collection: str) -> int:
        return len(self._collection(collection))
