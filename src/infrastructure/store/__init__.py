"""Document store contract and implementations."""

from src.infrastructure.store.base import (
    DocumentStore,
    OrderBy,
    QueryFilter,
    StoredDocument,
    StoreTimestamp,
)
from src.infrastructure.store.memory import InMemoryDocumentStore
from src.infrastructure.store.sql import SqlDocumentStore

__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "OrderBy",
    "QueryFilter",
    "SqlDocumentStore",
    "StoreTimestamp",
    "StoredDocument",
]
