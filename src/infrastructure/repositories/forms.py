from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

import structlog
from src.domain.models import FormDefinition
from src.infrastructure.repositories.documents import document_to_form, form_to_document
from src.infrastructure.store.base import DocumentStore, QueryFilter
from src.libs.circuit_breaker import CircuitBreaker

logger = structlog.get_logger(__name__)

FORMS_COLLECTION = "forms"


class FormProvider(Protocol):
    async def get_form(self, form_code: str) -> FormDefinition | None:
        ...


class StaticFormProvider:
    """Serves form definitions held in memory."""

    def __init__(self, forms: list[FormDefinition] | None = None) -> None:
        self._forms = {form.form_code: form for form in forms or []}

    def add(self, form: FormDefinition) -> None:
        self._forms[form.form_code] = form

    async def get_form(self, form_code: str) -> FormDefinition | None:
        return self._forms.get(form_code)


class StoreFormProvider:
    """Loads form definitions from the ``forms`` collection with a TTL cache."""

    def __init__(
        self,
        store: DocumentStore,
        breaker: CircuitBreaker | None = None,
        *,
        ttl_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.breaker = breaker
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[float, FormDefinition | None]] = {}

    async def get_form(self, form_code: str) -> FormDefinition | None:
        cached = self._cache.get(form_code)
        if cached is not None and self._clock() - cached[0] < self.ttl_seconds:
            return cached[1]

        async def query():
            return await self.store.query_documents(
                FORMS_COLLECTION,
                [QueryFilter("formCode", "==", form_code), QueryFilter("isActive", "==", True)],
                limit=1,
            )

        documents = await (self.breaker.execute(query) if self.breaker else query())
        form = document_to_form(documents[0].data) if documents else None
        if form is None:
            logger.warning("form_definition_missing", form_code=form_code)
        self._cache[form_code] = (self._clock(), form)
        return form

    async def save_form(self, form: FormDefinition) -> str:
        """Create or replace the stored definition of ``form.form_code``."""
        existing = await self.store.query_documents(
            FORMS_COLLECTION, [QueryFilter("formCode", "==", form.form_code)], limit=1
        )
        data = form_to_document(form)
        if existing:
            await self.store.update_document(FORMS_COLLECTION, existing[0].id, data)
            form_id = existing[0].id
        else:
            form_id = await self.store.create_document(FORMS_COLLECTION, data)
        self.invalidate(form.form_code)
        logger.info("form_definition_saved", form_code=form.form_code, fields=len(form.fields))
        return form_id

    def invalidate(self, form_code: str | None = None) -> None:
        if form_code is None:
            self._cache.clear()
        else:
            self._cache.pop(form_code, None)
