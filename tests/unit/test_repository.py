from __future__ import annotations

import copy

import pytest
from src.domain.errors import (
    AssessmentNotFoundError,
    CircuitOpenError,
    ImmutableAssessmentError,
    InvalidTransitionError,
    StoreError,
)
from src.domain.models import Answer, AssessmentStatus, FormDefinition
from src.domain.services.connectivity import ConnectivitySignal
from src.domain.services.offline_queue import OfflineActionQueue
from src.infrastructure.repositories.assessments import (
    ASSESSMENTS_COLLECTION,
    SUMMARIES_COLLECTION,
    AssessmentRepository,
)
from src.infrastructure.store.base import QueryFilter
from src.infrastructure.store.memory import InMemoryDocumentStore
from src.libs.circuit_breaker import CircuitBreaker
from tests.utils import FlakyStore, confirmed_answers, make_assessment

ALL_CONFIRMED = {"1.1": "2", "1.2": "1", "1.3": "n/a"}


async def _active_documents(store: InMemoryDocumentStore, vendor_code: str) -> list:
    return await store.query_documents(
        ASSESSMENTS_COLLECTION,
        [QueryFilter("vdCode", "==", vendor_code), QueryFilter("isActive", "==", True)],
    )


class BrokenForms:
    async def get_form(self, form_code: str) -> FormDefinition | None:
        raise StoreError("forms unavailable")


class TestSave:
    @pytest.mark.asyncio
    async def test_create_scores_and_persists(
        self, repository: AssessmentRepository, store: InMemoryDocumentStore
    ) -> None:
        assessment = make_assessment(answers=confirmed_answers({"1.1": "2", "1.2": "1"}))

        result = await repository.create(assessment)

        assert result.status == "created"
        assert assessment.assessment_id == result.assessment_id
        assert (assessment.total_score, assessment.max_score) == (3.0, 4.0)
        assert assessment.status is AssessmentStatus.IN_PROGRESS
        document = await store.get_document(ASSESSMENTS_COLLECTION, result.assessment_id)
        assert document is not None
        assert document.data["finalScore"] == 3.0
        assert document.data["answers"][0]["tScore"] == 2.0
        assert "createdAt" in document.data

    @pytest.mark.asyncio
    async def test_create_supersedes_previous_active_assessment(
        self, repository: AssessmentRepository, store: InMemoryDocumentStore
    ) -> None:
        first = await repository.create(make_assessment())
        second = await repository.create(make_assessment())
        await repository.create(make_assessment("V002"))

        active = await _active_documents(store, "V001")
        assert [doc.id for doc in active] == [second.assessment_id]
        previous = await repository.get(first.assessment_id)  # type: ignore[arg-type]
        assert not previous.is_active

    @pytest.mark.asyncio
    async def test_update_keeps_identity(
        self, repository: AssessmentRepository, store: InMemoryDocumentStore
    ) -> None:
        assessment = make_assessment()
        created = await repository.create(assessment)
        assessment.vendor_name = "Acme Renamed"

        result = await repository.save(assessment)

        assert result.status == "saved"
        assert result.assessment_id == created.assessment_id
        assert store.count(ASSESSMENTS_COLLECTION) == 1
        stored = await repository.get(created.assessment_id)  # type: ignore[arg-type]
        assert stored.vendor_name == "Acme Renamed"

    @pytest.mark.asyncio
    async def test_missing_document_is_recreated(
        self, repository: AssessmentRepository, store: InMemoryDocumentStore
    ) -> None:
        assessment = make_assessment()
        created = await repository.create(assessment)
        await store.delete_document(ASSESSMENTS_COLLECTION, created.assessment_id)  # type: ignore[arg-type]

        result = await repository.save(assessment)

        assert result.status == "recreated"
        assert result.assessment_id != created.assessment_id
        assert assessment.assessment_id == result.assessment_id
        assert store.count(ASSESSMENTS_COLLECTION) == 1

    @pytest.mark.asyncio
    async def test_locked_assessment_cannot_be_saved(self, repository: AssessmentRepository) -> None:
        assessment = make_assessment(status=AssessmentStatus.SUBMITTED)

        with pytest.raises(ImmutableAssessmentError):
            await repository.save(assessment)

    @pytest.mark.asyncio
    async def test_unavailable_form_falls_back_to_default_weights(
        self, flaky_store: FlakyStore, breaker: CircuitBreaker
    ) -> None:
        repository = AssessmentRepository(flaky_store, breaker, BrokenForms())
        assessment = make_assessment(answers=confirmed_answers({"1.1": "2", "1.2": "0"}))

        result = await repository.create(assessment)

        assert result.status == "created"
        assert assessment.average_score == 1.0

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast_instead_of_queueing(
        self,
        repository: AssessmentRepository,
        flaky_store: FlakyStore,
        queue: OfflineActionQueue,
    ) -> None:
        assessment = make_assessment()
        await repository.create(assessment)
        flaky_store.fail("get")
        for _ in range(5):
            with pytest.raises(StoreError):
                await repository.get(assessment.assessment_id)  # type: ignore[arg-type]

        with pytest.raises(CircuitOpenError):
            await repository.save(assessment)
        assert queue.pending_actions == []


class TestOfflineSaves:
    @pytest.mark.asyncio
    async def test_offline_save_is_queued_and_replayed(
        self,
        repository: AssessmentRepository,
        store: InMemoryDocumentStore,
        connectivity: ConnectivitySignal,
        queue: OfflineActionQueue,
    ) -> None:
        connectivity.set_online(False)
        assessment = make_assessment(answers=confirmed_answers({"1.1": "2"}))

        result = await repository.create(assessment)

        assert result.is_queued
        assert result.assessment_id is None
        assert store.count(ASSESSMENTS_COLLECTION) == 0
        [action] = queue.pending_actions
        assert action.resource_key == "assessment:new:V001:CSMChecklist"

        connectivity.set_online(True)
        assert await queue.drain() == 1

        [document] = await _active_documents(store, "V001")
        assert document.data["answers"][0]["score"] == "2"
        assert document.data["finalScore"] == 2.0

    @pytest.mark.asyncio
    async def test_store_failure_on_update_is_queued(
        self,
        repository: AssessmentRepository,
        flaky_store: FlakyStore,
        queue: OfflineActionQueue,
    ) -> None:
        assessment = make_assessment()
        created = await repository.create(assessment)
        assessment.working_area = "Jetty 2"
        flaky_store.fail("update")

        result = await repository.save(assessment)

        assert result.is_queued
        assert result.assessment_id == created.assessment_id
        assert queue.pending_actions[0].resource_key == f"assessment:{created.assessment_id}"

        flaky_store.heal()
        assert await queue.drain() == 1
        stored = await repository.get(created.assessment_id)  # type: ignore[arg-type]
        assert stored.working_area == "Jetty 2"

    @pytest.mark.asyncio
    async def test_repeated_offline_edits_collapse(
        self,
        repository: AssessmentRepository,
        connectivity: ConnectivitySignal,
        queue: OfflineActionQueue,
    ) -> None:
        assessment = make_assessment()
        await repository.create(assessment)
        connectivity.set_online(False)

        for area in ("Jetty 1", "Jetty 2", "Jetty 3"):
            assessment.working_area = area
            await repository.save(assessment)

        [action] = queue.pending_actions
        assert action.payload["document"]["vdWorkingArea"] == "Jetty 3"

    @pytest.mark.asyncio
    async def test_replay_onto_locked_document_is_a_sync_error(
        self,
        repository: AssessmentRepository,
        connectivity: ConnectivitySignal,
        queue: OfflineActionQueue,
    ) -> None:
        assessment = make_assessment(answers=confirmed_answers(ALL_CONFIRMED))
        await repository.create(assessment)
        stale = copy.deepcopy(assessment)
        await repository.submit(assessment)

        connectivity.set_online(False)
        stale.category = "Changed after submission"
        await repository.save(stale)
        connectivity.set_online(True)
        await queue.drain()

        assert queue.pending_actions == []
        [error] = queue.sync_errors
        assert error.attempts == 1
        assert "can no longer be modified" in error.message
        stored = await repository.get(assessment.assessment_id)  # type: ignore[arg-type]
        assert stored.status is AssessmentStatus.SUBMITTED
        assert stored.category == "Construction"

    @pytest.mark.asyncio
    async def test_online_save_discards_older_queued_write(
        self,
        repository: AssessmentRepository,
        connectivity: ConnectivitySignal,
        queue: OfflineActionQueue,
    ) -> None:
        assessment = make_assessment()
        await repository.create(assessment)
        connectivity.set_online(False)
        assessment.vendor_name = "Offline edit"
        assert (await repository.save(assessment)).is_queued

        connectivity.set_online(True)
        assessment.vendor_name = "Online edit"
        result = await repository.save(assessment)
        await queue.drain()

        assert result.status == "saved"
        assert queue.pending_actions == []
        stored = await repository.get(assessment.assessment_id)  # type: ignore[arg-type]
        assert stored.vendor_name == "Online edit"

    @pytest.mark.asyncio
    async def test_online_create_discards_queued_create(
        self,
        repository: AssessmentRepository,
        store: InMemoryDocumentStore,
        connectivity: ConnectivitySignal,
        queue: OfflineActionQueue,
    ) -> None:
        assessment = make_assessment()
        connectivity.set_online(False)
        await repository.create(copy.deepcopy(assessment))

        connectivity.set_online(True)
        result = await repository.create(assessment)
        await queue.drain()

        assert result.status == "created"
        assert queue.pending_actions == []
        assert store.count(ASSESSMENTS_COLLECTION) == 1

    @pytest.mark.asyncio
    async def test_replay_listeners_hear_recreated_documents(
        self,
        repository: AssessmentRepository,
        store: InMemoryDocumentStore,
        connectivity: ConnectivitySignal,
        queue: OfflineActionQueue,
    ) -> None:
        events: list[tuple[str, str | None, str]] = []
        unsubscribe = repository.subscribe_replays(
            lambda key, result: events.append((key, result.assessment_id, result.status))
        )
        assessment = make_assessment()
        await repository.create(assessment)
        original_id = assessment.assessment_id
        connectivity.set_online(False)
        await repository.save(assessment)
        await store.delete_document(ASSESSMENTS_COLLECTION, original_id)  # type: ignore[arg-type]

        connectivity.set_online(True)
        await queue.drain()
        unsubscribe()

        [(key, new_id, status)] = events
        assert key == f"assessment:{original_id}"
        assert status == "recreated"
        assert new_id is not None and new_id != original_id


class TestWorkflow:
    @pytest.mark.asyncio
    async def test_submit_persists_and_refreshes_summary(
        self, repository: AssessmentRepository, store: InMemoryDocumentStore
    ) -> None:
        assessment = make_assessment(answers=confirmed_answers(ALL_CONFIRMED))
        await repository.create(assessment)

        result = await repository.submit(assessment)

        assert result.summary_updated
        assert assessment.status is AssessmentStatus.SUBMITTED
        assert assessment.submitted_at is not None
        stored = await repository.get(assessment.assessment_id)  # type: ignore[arg-type]
        assert stored.status is AssessmentStatus.SUBMITTED
        [summary] = await repository.list_summaries()
        assert summary.vendor_code == "V001"
        assert summary.last_assessment_id == assessment.assessment_id
        assert (summary.total_score, summary.average_score) == (3.0, 1.5)
        assert summary.risk_level == "Low"
        assert store.count(SUMMARIES_COLLECTION) == 1

    @pytest.mark.asyncio
    async def test_summary_failure_does_not_undo_submission(
        self, repository: AssessmentRepository, flaky_store: FlakyStore
    ) -> None:
        assessment = make_assessment(answers=confirmed_answers(ALL_CONFIRMED))
        await repository.create(assessment)
        flaky_store.fail("query")

        result = await repository.submit(assessment)

        assert not result.summary_updated
        assert result.summary_error is not None
        flaky_store.heal()
        stored = await repository.get(assessment.assessment_id)  # type: ignore[arg-type]
        assert stored.status is AssessmentStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_failed_submit_leaves_assessment_untouched(
        self, repository: AssessmentRepository
    ) -> None:
        assessment = make_assessment(answers=[Answer(ck_item="1.1", score="2")])
        await repository.create(assessment)

        with pytest.raises(InvalidTransitionError):
            await repository.submit(assessment)

        assert assessment.status is AssessmentStatus.IN_PROGRESS
        assert assessment.submitted_at is None

    @pytest.mark.asyncio
    async def test_submit_requires_connectivity(
        self, repository: AssessmentRepository, connectivity: ConnectivitySignal
    ) -> None:
        assessment = make_assessment(answers=confirmed_answers(ALL_CONFIRMED))
        connectivity.set_online(False)

        with pytest.raises(StoreError):
            await repository.submit(assessment)

    @pytest.mark.asyncio
    async def test_approve_and_reject(self, repository: AssessmentRepository) -> None:
        approved = make_assessment(answers=confirmed_answers(ALL_CONFIRMED))
        await repository.create(approved)
        await repository.submit(approved)

        result = await repository.approve(approved.assessment_id, "hse.manager")  # type: ignore[arg-type]

        assert result.assessment.is_approved
        stored = await repository.get(approved.assessment_id)  # type: ignore[arg-type]
        assert stored.status is AssessmentStatus.APPROVED
        assert stored.reviewed_by == "hse.manager"
        with pytest.raises(InvalidTransitionError):
            await repository.reject(approved.assessment_id, "hse.manager")  # type: ignore[arg-type]

        rejected = make_assessment("V002", answers=confirmed_answers(ALL_CONFIRMED))
        await repository.create(rejected)
        await repository.submit(rejected)
        await repository.reject(rejected.assessment_id, "hse.manager", "Photos missing")  # type: ignore[arg-type]

        reopened = await repository.get(rejected.assessment_id)  # type: ignore[arg-type]
        assert reopened.status is AssessmentStatus.REJECTED
        assert reopened.review_comment == "Photos missing"
        repository.state_machine.apply_answer_change(reopened, "1.2", score="2")
        assert (await repository.save(reopened)).status == "saved"


class TestReads:
    @pytest.mark.asyncio
    async def test_transient_read_failures_are_retried(
        self, repository: AssessmentRepository, flaky_store: FlakyStore
    ) -> None:
        assessment = make_assessment()
        await repository.create(assessment)
        flaky_store.calls.clear()
        flaky_store.fail("get", times=1)

        loaded = await repository.get(assessment.assessment_id)  # type: ignore[arg-type]

        assert loaded.vendor_code == "V001"
        assert flaky_store.calls == [("get", ASSESSMENTS_COLLECTION)] * 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_store_error(
        self, repository: AssessmentRepository, flaky_store: FlakyStore
    ) -> None:
        flaky_store.fail("get")

        with pytest.raises(StoreError):
            await repository.get("any")

    @pytest.mark.asyncio
    async def test_missing_assessment(self, repository: AssessmentRepository) -> None:
        with pytest.raises(AssessmentNotFoundError):
            await repository.get("missing")

    @pytest.mark.asyncio
    async def test_documents_without_status_are_derived(
        self, repository: AssessmentRepository, store: InMemoryDocumentStore
    ) -> None:
        document_id = await store.create_document(
            ASSESSMENTS_COLLECTION,
            {
                "vdCode": "V005",
                "isActive": True,
                "answers": [{"ckItem": "1.1", "score": "1", "comment": "ok", "isFinish": True}],
            },
        )

        assessment = await repository.get(document_id)

        assert assessment.status is AssessmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_active_lookup_and_statistics(self, repository: AssessmentRepository) -> None:
        await repository.create(make_assessment(answers=confirmed_answers({"1.1": "1"})))
        latest = make_assessment(answers=confirmed_answers(ALL_CONFIRMED))
        await repository.create(latest)
        await repository.create(make_assessment("V002", answers=confirmed_answers({"1.1": "0"})))

        active = await repository.get_active("V001", "CSMChecklist")
        history = await repository.list_for_vendor("V001")
        stats = await repository.get_statistics()

        assert active is not None
        assert active.assessment_id == latest.assessment_id
        assert len(history) == 2
        assert stats.total_assessments == 3
        assert stats.active_assessments == 2
        assert stats.vendors_assessed == 2
        assert stats.average_score == 0.75
        assert stats.by_status["completed"] == 1
        assert stats.by_status["in-progress"] == 1

    @pytest.mark.asyncio
    async def test_delete(self, repository: AssessmentRepository) -> None:
        assessment = make_assessment()
        await repository.create(assessment)

        await repository.delete(assessment.assessment_id)  # type: ignore[arg-type]

        with pytest.raises(AssessmentNotFoundError):
            await repository.get(assessment.assessment_id)  # type: ignore[arg-type]
