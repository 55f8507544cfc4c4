"""
Assessment persistence.

Reads go through the circuit breaker with retries for transient store
errors. Writes go through the breaker once; when the store is unreachable
(or connectivity is known to be down) the write is handed to the offline
action queue and replayed later. Every write carries the full document so a
replay never depends on state that only existed in memory.
"""

from __future__ import annotations

import copy
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Literal, TypeVar

import structlog
from src.domain.errors import (
    AssessmentNotFoundError,
    ConflictError,
    ImmutableAssessmentError,
    StoreError,
)
from src.domain.models import Assessment, AssessmentStatus, AssessmentSummary, FormDefinition
from src.domain.services.connectivity import ConnectivitySignal
from src.domain.services.offline_queue import OfflineActionQueue
from src.domain.services.scoring import (
    classify_risk,
    compute_totals,
    weight_map,
    weighted_answers,
)
from src.domain.services.state_machine import AssessmentStateMachine
from src.infrastructure.repositories.documents import (
    assessment_to_document,
    document_has_status,
    document_to_assessment,
    document_to_summary,
    prepare_store_data,
    summary_to_document,
    to_json_payload,
)
from src.infrastructure.repositories.forms import FormProvider
from src.infrastructure.store.base import DocumentStore, OrderBy, QueryFilter, StoredDocument
from src.libs.circuit_breaker import CircuitBreaker, CircuitOpenError
from src.libs.dates import DateParser, utcnow
from src.libs.retry import RetryExhaustedError, with_retry

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ASSESSMENTS_COLLECTION = "csmAssessments"
SUMMARIES_COLLECTION = "csmAssessmentSummaries"
SAVE_ACTION = "assessment.save"

SaveStatus = Literal["saved", "created", "recreated", "queued"]


@dataclass(slots=True)
class SaveResult:
    assessment_id: str | None
    status: SaveStatus
    action_id: str | None = None

    @property
    def is_queued(self) -> bool:
        return self.status == "queued"


# Called with the resource key a replayed write was queued under and its outcome.
ReplayListener = Callable[[str, SaveResult], None]


@dataclass(slots=True)
class SubmitResult:
    assessment: Assessment
    summary_updated: bool
    summary_error: str | None = None


@dataclass(slots=True)
class AssessmentStatistics:
    total_assessments: int
    active_assessments: int
    vendors_assessed: int
    average_score: float
    by_status: dict[str, int]


def _adopt(target: Assessment, source: Assessment) -> None:
    for f in fields(Assessment):
        setattr(target, f.name, getattr(source, f.name))


class AssessmentRepository:
    """Store-facing operations on assessments and vendor summaries."""

    def __init__(
        self,
        store: DocumentStore,
        breaker: CircuitBreaker,
        forms: FormProvider,
        *,
        queue: OfflineActionQueue | None = None,
        connectivity: ConnectivitySignal | None = None,
        state_machine: AssessmentStateMachine | None = None,
        date_parser: DateParser | None = None,
        read_max_retries: int = 3,
        read_base_delay: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.breaker = breaker
        self.forms = forms
        self.queue = queue
        self.connectivity = connectivity
        self.state_machine = state_machine or AssessmentStateMachine(clock=clock)
        self.date_parser = date_parser or DateParser()
        self.read_max_retries = read_max_retries
        self.read_base_delay = read_base_delay
        self._clock = clock
        self._replay_listeners: list[ReplayListener] = []
        if queue is not None:
            queue.register_handler(SAVE_ACTION, self._replay_save)

    def subscribe_replays(self, listener: ReplayListener) -> Callable[[], None]:
        self._replay_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._replay_listeners:
                self._replay_listeners.remove(listener)

        return unsubscribe

    @staticmethod
    def resource_key(assessment: Assessment) -> str:
        """Key under which queued writes of ``assessment`` collapse."""
        if assessment.assessment_id:
            return f"assessment:{assessment.assessment_id}"
        return f"assessment:new:{assessment.vendor_code}:{assessment.form_code}"

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    async def _read(self, operation: Callable[[], Awaitable[T]]) -> T:
        async def attempt() -> T:
            return await with_retry(
                operation,
                max_retries=self.read_max_retries,
                base_delay=self.read_base_delay,
                retry_on=(StoreError,),
            )

        try:
            return await self.breaker.execute(attempt)
        except RetryExhaustedError as exc:
            raise exc.last_error from exc

    async def _write(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.breaker.execute(operation)

    def _is_offline(self) -> bool:
        return self.connectivity is not None and not self.connectivity.is_online

    def _to_assessment(self, document: StoredDocument) -> Assessment:
        assessment = document_to_assessment(
            document.data, assessment_id=document.id, date_parser=self.date_parser
        )
        if not document_has_status(document.data):
            # Documents written before status tracking carry only the flags.
            self.state_machine.refresh_status(assessment)
        return assessment

    async def _form_for(self, form_code: str) -> FormDefinition | None:
        try:
            return await self.forms.get_form(form_code)
        except (StoreError, CircuitOpenError) as exc:
            # Scores fall back to default weights; a later save recomputes them.
            await logger.awarning("form_definition_unavailable", form_code=form_code, error=str(exc))
            return None

    def normalize(self, assessment: Assessment, form: FormDefinition | None) -> Assessment:
        """Recompute weighted scores, totals and derived status in place."""
        weights = weight_map(form.fields) if form is not None else {}
        assessment.answers = weighted_answers(assessment.answers, weights)
        totals = compute_totals(assessment.answers, weights)
        assessment.total_score = totals.total
        assessment.average_score = totals.average
        assessment.max_score = totals.max
        if form is not None:
            assessment.form_version = form.form_version
        self.state_machine.refresh_status(assessment, form)
        now = self._clock()
        if assessment.created_at is None:
            assessment.created_at = now
        assessment.updated_at = now
        return assessment

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, assessment: Assessment) -> SaveResult:
        """Persist a new assessment and deactivate earlier ones for the same vendor/form."""
        assessment.assessment_id = None
        return await self.save(assessment)

    async def save(self, assessment: Assessment) -> SaveResult:
        """Create or update ``assessment``; queue the write when the store is unreachable."""
        self.state_machine.ensure_mutable(assessment)
        form = await self._form_for(assessment.form_code)
        self.normalize(assessment, form)

        if self._is_offline() and self.queue is not None:
            return await self._enqueue_save(assessment)
        queued_key = self.resource_key(assessment)
        try:
            result = await self._persist(assessment)
        except StoreError as exc:
            if self.queue is None:
                raise
            await logger.awarning(
                "assessment_save_deferred",
                assessment_id=assessment.assessment_id,
                vendor_code=assessment.vendor_code,
                error=str(exc),
            )
            return await self._enqueue_save(assessment)
        await self._discard_overtaken(queued_key, result)
        return result

    async def _discard_overtaken(self, queued_key: str, result: SaveResult) -> None:
        # A direct write carries the full document, so older queued intents are stale.
        if self.queue is None:
            return
        keys = {queued_key, f"assessment:{result.assessment_id}"}
        for key in keys:
            await self.queue.discard(SAVE_ACTION, key)

    async def _persist(self, assessment: Assessment, *, allow_locked: bool = False) -> SaveResult:
        document = prepare_store_data(assessment_to_document(assessment))
        assessment_id = assessment.assessment_id
        if assessment_id is None:
            new_id = await self._create_active(assessment, document)
            return SaveResult(assessment_id=new_id, status="created")

        existing = await self._write(
            lambda: self.store.get_document(ASSESSMENTS_COLLECTION, assessment_id)
        )
        if existing is None:
            await logger.awarning("assessment_document_missing", assessment_id=assessment_id)
            new_id = await self._create_active(assessment, document)
            return SaveResult(assessment_id=new_id, status="recreated")

        if not allow_locked:
            stored = self._to_assessment(existing)
            if self.state_machine.is_locked(stored):
                raise ImmutableAssessmentError(
                    f"Assessment {assessment_id} is {stored.status.value} "
                    "and can no longer be modified"
                )

        try:
            await self._write(
                lambda: self.store.update_document(ASSESSMENTS_COLLECTION, assessment_id, document)
            )
        except ConflictError:
            # Deleted between the read and the write.
            await logger.awarning("assessment_document_missing", assessment_id=assessment_id)
            new_id = await self._create_active(assessment, document)
            return SaveResult(assessment_id=new_id, status="recreated")

        await logger.ainfo(
            "assessment_saved",
            assessment_id=assessment_id,
            status=assessment.status.value,
            total_score=assessment.total_score,
        )
        return SaveResult(assessment_id=assessment_id, status="saved")

    async def _create_active(self, assessment: Assessment, document: dict[str, Any]) -> str:
        previous = await self._write(
            lambda: self.store.query_documents(
                ASSESSMENTS_COLLECTION,
                [
                    QueryFilter("vdCode", "==", assessment.vendor_code),
                    QueryFilter("formCode", "==", assessment.form_code),
                    QueryFilter("isActive", "==", True),
                ],
            )
        )
        stamp = prepare_store_data({"isActive": False, "updatedAt": self._clock()})
        for doc in previous:
            await self._write(
                lambda doc_id=doc.id: self.store.update_document(
                    ASSESSMENTS_COLLECTION, doc_id, stamp
                )
            )

        assessment.is_active = True
        document["isActive"] = True
        new_id = await self._write(
            lambda: self.store.create_document(ASSESSMENTS_COLLECTION, document)
        )
        assessment.assessment_id = new_id
        await logger.ainfo(
            "assessment_created",
            assessment_id=new_id,
            vendor_code=assessment.vendor_code,
            form_code=assessment.form_code,
            superseded=len(previous),
        )
        return new_id

    async def _enqueue_save(self, assessment: Assessment) -> SaveResult:
        assert self.queue is not None
        action = await self.queue.enqueue(
            SAVE_ACTION,
            {
                "assessment_id": assessment.assessment_id,
                "document": to_json_payload(assessment_to_document(assessment)),
            },
            resource_key=self.resource_key(assessment),
        )
        return SaveResult(
            assessment_id=assessment.assessment_id, status="queued", action_id=action.id
        )

    async def _replay_save(self, payload: dict[str, Any]) -> SaveResult:
        assessment = document_to_assessment(
            payload["document"],
            assessment_id=payload.get("assessment_id"),
            date_parser=self.date_parser,
        )
        queued_key = self.resource_key(assessment)
        form = await self._form_for(assessment.form_code)
        self.normalize(assessment, form)
        result = await self._persist(assessment)
        await logger.ainfo(
            "assessment_replayed",
            assessment_id=result.assessment_id,
            status=result.status,
        )
        for listener in list(self._replay_listeners):
            listener(queued_key, result)
        return result

    async def submit(self, assessment: Assessment) -> SubmitResult:
        """Submit a completed assessment, then refresh the vendor summary.

        The submission is committed before the summary is recomputed; a
        summary failure is reported on the result instead of undoing it.
        """
        if self._is_offline():
            raise StoreError("Assessments cannot be submitted while offline")
        candidate = copy.deepcopy(assessment)
        form = await self.forms.get_form(candidate.form_code)
        self.normalize(candidate, form)
        self.state_machine.submit(candidate, form)
        await self._persist(candidate)
        _adopt(assessment, candidate)
        await logger.ainfo(
            "assessment_submitted",
            assessment_id=assessment.assessment_id,
            vendor_code=assessment.vendor_code,
            average_score=assessment.average_score,
        )
        updated, error = await self._refresh_summary_safely(assessment.vendor_code)
        return SubmitResult(assessment=assessment, summary_updated=updated, summary_error=error)

    async def approve(self, assessment_id: str, reviewer: str) -> SubmitResult:
        assessment = await self.get(assessment_id)
        self.state_machine.approve(assessment, reviewer)
        return await self._review_write(assessment)

    async def reject(self, assessment_id: str, reviewer: str, comment: str = "") -> SubmitResult:
        assessment = await self.get(assessment_id)
        self.state_machine.reject(assessment, reviewer, comment)
        return await self._review_write(assessment)

    async def _review_write(self, assessment: Assessment) -> SubmitResult:
        assessment.updated_at = self._clock()
        await self._persist(assessment, allow_locked=True)
        await logger.ainfo(
            "assessment_reviewed",
            assessment_id=assessment.assessment_id,
            status=assessment.status.value,
            reviewed_by=assessment.reviewed_by,
        )
        updated, error = await self._refresh_summary_safely(assessment.vendor_code)
        return SubmitResult(assessment=assessment, summary_updated=updated, summary_error=error)

    async def delete(self, assessment_id: str) -> None:
        await self._write(
            lambda: self.store.delete_document(ASSESSMENTS_COLLECTION, assessment_id)
        )
        await logger.ainfo("assessment_deleted", assessment_id=assessment_id)

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    async def _refresh_summary_safely(self, vendor_code: str) -> tuple[bool, str | None]:
        try:
            await self.refresh_summary(vendor_code)
        except (StoreError, CircuitOpenError, ConflictError) as exc:
            await logger.aerror("assessment_summary_failed", vendor_code=vendor_code, error=str(exc))
            return False, str(exc)
        return True, None

    async def refresh_summary(self, vendor_code: str) -> AssessmentSummary | None:
        """Recompute the summary document of ``vendor_code`` from its active assessment."""
        active = await self.get_active(vendor_code)
        if active is None or active.assessment_id is None:
            return None

        summary = AssessmentSummary(
            vendor_code=active.vendor_code,
            vendor_name=active.vendor_name,
            last_assessment_id=active.assessment_id,
            last_assessment_date=active.submitted_at or active.updated_at or self._clock(),
            total_score=active.total_score,
            average_score=active.average_score,
            max_score=active.max_score,
            risk_level=active.risk_level or classify_risk(active.average_score),
            status=active.status.value,
            updated_at=self._clock(),
        )
        data = prepare_store_data(summary_to_document(summary))
        existing = await self._write(
            lambda: self.store.query_documents(
                SUMMARIES_COLLECTION, [QueryFilter("vdCode", "==", vendor_code)], limit=1
            )
        )
        if existing:
            summary_id = existing[0].id
            await self._write(
                lambda: self.store.update_document(SUMMARIES_COLLECTION, summary_id, data)
            )
        else:
            await self._write(lambda: self.store.create_document(SUMMARIES_COLLECTION, data))
        await logger.ainfo("assessment_summary_updated", vendor_code=vendor_code)
        return summary

    async def list_summaries(self, limit: int = 20) -> list[AssessmentSummary]:
        documents = await self._read(
            lambda: self.store.query_documents(
                SUMMARIES_COLLECTION, order_by=[OrderBy("updatedAt", "desc")], limit=limit
            )
        )
        return [document_to_summary(doc.data, self.date_parser) for doc in documents]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, assessment_id: str) -> Assessment:
        document = await self._read(
            lambda: self.store.get_document(ASSESSMENTS_COLLECTION, assessment_id)
        )
        if document is None:
            raise AssessmentNotFoundError(f"Assessment {assessment_id} not found")
        return self._to_assessment(document)

    async def get_active(self, vendor_code: str, form_code: str | None = None) -> Assessment | None:
        filters = [QueryFilter("vdCode", "==", vendor_code), QueryFilter("isActive", "==", True)]
        if form_code is not None:
            filters.append(QueryFilter("formCode", "==", form_code))
        documents = await self._read(
            lambda: self.store.query_documents(
                ASSESSMENTS_COLLECTION, filters, order_by=[OrderBy("createdAt", "desc")], limit=1
            )
        )
        return self._to_assessment(documents[0]) if documents else None

    async def list_for_vendor(self, vendor_code: str) -> list[Assessment]:
        documents = await self._read(
            lambda: self.store.query_documents(
                ASSESSMENTS_COLLECTION,
                [QueryFilter("vdCode", "==", vendor_code)],
                order_by=[OrderBy("createdAt", "desc")],
            )
        )
        return [self._to_assessment(doc) for doc in documents]

    async def get_statistics(self) -> AssessmentStatistics:
        documents = await self._read(
            lambda: self.store.query_documents(ASSESSMENTS_COLLECTION)
        )
        assessments = [self._to_assessment(doc) for doc in documents]
        active = [a for a in assessments if a.is_active]
        by_status: dict[str, int] = {status.value: 0 for status in AssessmentStatus}
        for assessment in active:
            by_status[assessment.status.value] += 1
        average = (
            round(sum(a.average_score for a in active) / len(active), 2) if active else 0.0
        )
        return AssessmentStatistics(
            total_assessments=len(assessments),
            active_assessments=len(active),
            vendors_assessed=len({a.vendor_code for a in assessments}),
            average_score=average,
            by_status=by_status,
        )
