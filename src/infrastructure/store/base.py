"""
Contract of the remote document store.

Any key-document database can back the engine as long as it offers
get/query/create/update/delete on named collections. All operations are
async and raise StoreError on I/O failure.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal, Protocol

FilterOp = Literal["==", "!=", "<", "<=", ">", ">=", "in"]
SortDirection = Literal["asc", "desc"]

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
}


@dataclass(slots=True, frozen=True)
class StoreTimestamp:
    """The store's native timestamp: seconds + nanoseconds since the epoch (UTC)."""

    seconds: int
    nanoseconds: int = 0

    @classmethod
    def from_datetime(cls, value: datetime) -> StoreTimestamp:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        epoch = value.timestamp()
        seconds = int(epoch // 1)
        return cls(seconds=seconds, nanoseconds=value.microsecond * 1000)

    def to_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.seconds, tz=UTC).replace(
            microsecond=self.nanoseconds // 1000
        )

    def to_json(self) -> dict[str, int]:
        return {"seconds": self.seconds, "nanoseconds": self.nanoseconds}


@dataclass(slots=True, frozen=True)
class QueryFilter:
    field: str
    op: FilterOp
    value: Any

    def matches(self, data: dict[str, Any]) -> bool:
        current = lookup(data, self.field)
        if current is None and self.op != "==" and self.op != "!=":
            return False
        try:
            return _OPERATORS[self.op](sortable(current), sortable(self.value))
        except TypeError:
            return False


@dataclass(slots=True, frozen=True)
class OrderBy:
    field: str
    direction: SortDirection = "asc"


@dataclass(slots=True)
class StoredDocument:
    id: str
    data: dict[str, Any]


def lookup(data: dict[str, Any], dotted: str) -> Any:
    current: Any = data
    for part in dotted.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def sortable(value: Any) -> Any:
    """Comparable form of a stored value (timestamps compare by instant)."""
    if isinstance(value, StoreTimestamp):
        return (value.seconds, value.nanoseconds)
    if isinstance(value, dict) and "seconds" in value:
        return (value.get("seconds", 0), value.get("nanoseconds", 0))
    if isinstance(value, list | tuple):
        return type(value)(sortable(v) for v in value)
    return value


def apply_query(
    documents: list[StoredDocument],
    filters: Sequence[QueryFilter] = (),
    order_by: Sequence[OrderBy] = (),
    limit: int | None = None,
) -> list[StoredDocument]:
    """Filter, sort and limit documents in memory."""
    result = [doc for doc in documents if all(f.matches(doc.data) for f in filters)]
    # Stable sorts applied last-key-first give a multi-key ordering.
    for order in reversed(order_by):
        present = [d for d in result if lookup(d.data, order.field) is not None]
        missing = [d for d in result if lookup(d.data, order.field) is None]
        present.sort(
            key=lambda d, f=order.field: sortable(lookup(d.data, f)),
            reverse=order.direction == "desc",
        )
        result = present + missing
    if limit is not None:
        result = result[:limit]
    return result


class DocumentStore(Protocol):
    """Narrow interface the engine needs from a document database."""

    async def get_document(self, collection: str, document_id: str) -> StoredDocument | None:
        ...

    async def query_documents(
        self,
        collection: str,
        filters: Sequence[QueryFilter] = (),
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
    ) -> list[StoredDocument]:
        ...

    async def create_document(self, collection: str, data: dict[str, Any]) -> str:
        ...

    async def update_document(
        self, collection: str, document_id: str, partial_data: dict[str, Any]
    ) -> None:
        ...

    async def delete_document(self, collection: str, document_id: str) -> None:
        ...

    async def ping(self) -> bool:
        ...
