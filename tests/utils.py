from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from src.domain.errors import StoreError
from src.domain.models import Answer, Assessment, FormDefinition, FormField, Person
from src.infrastructure.store.base import OrderBy, QueryFilter, StoredDocument
from src.infrastructure.store.memory import InMemoryDocumentStore

FORM_CODE = "CSMChecklist"


def build_form(weights: dict[str, object] | None = None) -> FormDefinition:
    weights = weights or {"1.1": "1", "1.2": "1", "1.3": "1"}
    return FormDefinition(
        form_code=FORM_CODE,
        fields=[
            FormField(ck_item=item, ck_question=f"Question {item}", f_score=weight)
            for item, weight in weights.items()
        ],
    )


class FlakyStore:
    """Wraps an in-memory store and fails selected operations on demand."""

    def __init__(self, inner: InMemoryDocumentStore) -> None:
        self.inner = inner
        self.fail_operations: set[str] = set()
        self.failures_left: int | None = None
        self.calls: list[tuple[str, str]] = []

    def fail(self, *operations: str, times: int | None = None) -> None:
        self.fail_operations = set(operations)
        self.failures_left = times

    def heal(self) -> None:
        self.fail_operations.clear()
        self.failures_left = None

    def _check(self, operation: str, collection: str) -> None:
        self.calls.append((operation, collection))
        if operation not in self.fail_operations:
            return
        if self.failures_left is not None:
            if self.failures_left <= 0:
                return
            self.failures_left -= 1
        raise StoreError(f"simulated {operation} failure")

    async def get_document(self, collection: str, document_id: str) -> StoredDocument | None:
        self._check("get", collection)
        return await self.inner.get_document(collection, document_id)

    async def query_documents(
        self,
        collection: str,
        filters: Sequence[QueryFilter] = (),
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
    ) -> list[StoredDocument]:
        self._check("query", collection)
        return await self.inner.query_documents(collection, filters, order_by, limit)

    async def create_document(self, collection: str, data: dict[str, Any]) -> str:
        self._check("create", collection)
        return await self.inner.create_document(collection, data)

    async def update_document(
        self, collection: str, document_id: str, partial_data: dict[str, Any]
    ) -> None:
        self._check("update", collection)
        await self.inner.update_document(collection, document_id, partial_data)

    async def delete_document(self, collection: str, document_id: str) -> None:
        self._check("delete", collection)
        await self.inner.delete_document(collection, document_id)

    async def ping(self) -> bool:
        self._check("ping", "-")
        return True


def make_assessment(vendor_code: str = "V001", **overrides: Any) -> Assessment:
    values: dict[str, Any] = {
        "vendor_code": vendor_code,
        "form_code": "CSMChecklist",
        "vendor_name": "Acme Contractors",
        "auditor": Person(name="Dewi Auditor", email="dewi@example.com"),
        "auditee": Person(name="Budi Site Lead", position="HSE Lead"),
        "risk_level": "Low",
        "working_area": "Refinery unit 3",
        "category": "Construction",
    }
    values.update(overrides)
    return Assessment(**values)


def confirmed_answers(scores: dict[str, str]) -> list[Answer]:
    return [
        Answer(ck_item=item, score=score, comment=f"Evidence for {item}", is_finish=True)
        for item, score in scores.items()
    ]
