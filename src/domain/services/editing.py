"""
Interactive editing of one assessment.

A session owns the in-memory copy of an assessment while a user edits it.
Every edit is validated by the state machine, rescored, and fed to a
debounced auto-save; manual saves and submission flush through the same
auto-save so two saves of one assessment never run concurrently.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog
from src.domain.errors import AssessmentNotFoundError, ImmutableAssessmentError
from src.domain.models import Answer, Assessment, FileAttachment, FormDefinition
from src.domain.services.autosave import DebouncedAutoSave
from src.domain.services.scoring import (
    AssessmentStats,
    ScoreTotals,
    assessment_stats,
    classify_risk,
    compute_totals,
    weight_map,
)
from src.domain.services.state_machine import AssessmentStateMachine
from src.infrastructure.repositories.assessments import (
    AssessmentRepository,
    SaveResult,
    SubmitResult,
)

logger = structlog.get_logger(__name__)

ReboundListener = Callable[[str | None, str], None]


@dataclass(slots=True)
class SessionStatus:
    assessment_id: str | None
    status: str
    is_saving: bool
    has_unsaved_changes: bool
    last_saved: str | None
    last_result: str | None
    error: str | None
    save_text: str


class AssessmentEditingSession:
    def __init__(
        self,
        assessment: Assessment,
        repository: AssessmentRepository,
        form: FormDefinition | None = None,
        *,
        autosave_delay: float = 2.0,
        autosave_enabled: bool = True,
        state_machine: AssessmentStateMachine | None = None,
        on_rebound: ReboundListener | None = None,
    ) -> None:
        self._assessment = assessment
        self.repository = repository
        self.form = form
        self.state_machine = state_machine or repository.state_machine
        self._weights = weight_map(form.fields) if form is not None else {}
        self.last_result: SaveResult | None = None
        self._on_rebound = on_rebound
        self._submit_lock = asyncio.Lock()
        self.autosave: DebouncedAutoSave[Assessment] = DebouncedAutoSave(
            self._persist,
            delay=autosave_delay,
            enabled=autosave_enabled,
            name=f"assessment:{assessment.assessment_id}",
        )
        self.autosave.mark_saved(assessment)
        self._unsubscribe_replays = repository.subscribe_replays(self._on_replayed)

    @property
    def assessment(self) -> Assessment:
        return copy.deepcopy(self._assessment)

    @property
    def assessment_id(self) -> str | None:
        return self._assessment.assessment_id

    def totals(self) -> ScoreTotals:
        return compute_totals(self._assessment.answers, self._weights)

    def stats(self) -> AssessmentStats:
        fields = self.form.fields if self.form is not None else []
        return assessment_stats(self._assessment.answers, fields)

    def suggested_risk(self) -> str:
        return classify_risk(self.totals().average)

    def edit_answer(
        self,
        ck_item: str,
        *,
        score: str | None = None,
        comment: str | None = None,
        action: str | None = None,
        is_finish: bool | None = None,
        files: list[FileAttachment] | None = None,
    ) -> Answer:
        self._ensure_not_submitting()
        answer = self.state_machine.apply_answer_change(
            self._assessment,
            ck_item,
            form=self.form,
            score=score,
            comment=comment,
            action=action,
            is_finish=is_finish,
            files=files,
        )
        self._rescore()
        self.autosave.notify(self._assessment)
        return copy.deepcopy(answer)

    def update_metadata(self, **changes: Any) -> Assessment:
        self._ensure_not_submitting()
        self.state_machine.update_metadata(self._assessment, **changes)
        self.state_machine.refresh_status(self._assessment, self.form)
        self.autosave.notify(self._assessment)
        return self.assessment

    async def save_now(self) -> SaveResult | None:
        """Flush pending edits and raise the save error, if any."""
        self.autosave.notify(self._assessment)
        await self.autosave.save_now()
        if self.autosave.error is not None:
            raise self.autosave.error
        return self.last_result

    async def submit(self) -> SubmitResult:
        """Flush pending edits and submit; edits are refused until the submission settles."""
        self._ensure_not_submitting()
        async with self._submit_lock:
            await self.save_now()
            result = await self.repository.submit(self._assessment)
            self.autosave.mark_saved(self._assessment)
        return result

    async def close(self) -> None:
        """Stop auto-saving; unsaved edits are flushed first."""
        if self.autosave.has_unsaved_changes and not self.state_machine.is_locked(
            self._assessment
        ):
            self.autosave.notify(self._assessment)
            await self.autosave.save_now()
        self.detach()
        await self.autosave.wait_idle()

    def detach(self) -> None:
        """Stop auto-saving and listening for replays without flushing."""
        self.autosave.close()
        self._unsubscribe_replays()

    def status(self) -> SessionStatus:
        return SessionStatus(
            assessment_id=self._assessment.assessment_id,
            status=self._assessment.status.value,
            is_saving=self.autosave.is_saving,
            has_unsaved_changes=self.autosave.has_unsaved_changes,
            last_saved=self.autosave.last_saved.isoformat() if self.autosave.last_saved else None,
            last_result=self.last_result.status if self.last_result else None,
            error=str(self.autosave.error) if self.autosave.error else None,
            save_text=self.autosave.status_text(),
        )

    def _rescore(self) -> None:
        totals = self.totals()
        self._assessment.total_score = totals.total
        self._assessment.average_score = totals.average
        self._assessment.max_score = totals.max

    async def _persist(self, snapshot: Assessment) -> None:
        result = await self.repository.save(snapshot)
        self.last_result = result
        if self._assessment.created_at is None:
            self._assessment.created_at = snapshot.created_at
        if result.assessment_id and result.assessment_id != self._assessment.assessment_id:
            self._rebind(result)

    def _on_replayed(self, queued_key: str, result: SaveResult) -> None:
        if queued_key != self.repository.resource_key(self._assessment):
            return
        if result.assessment_id and result.assessment_id != self._assessment.assessment_id:
            self._rebind(result)

    def _rebind(self, result: SaveResult) -> None:
        assert result.assessment_id is not None
        previous_id = self._assessment.assessment_id
        logger.info(
            "editing_session_rebound",
            previous_id=previous_id,
            assessment_id=result.assessment_id,
            status=result.status,
        )
        self._assessment.assessment_id = result.assessment_id
        self._assessment.is_active = True
        if self._on_rebound is not None:
            self._on_rebound(previous_id, result.assessment_id)

    def _ensure_not_submitting(self) -> None:
        if self._submit_lock.locked():
            raise ImmutableAssessmentError(
                f"Assessment {self._assessment.assessment_id} is being submitted"
            )


class EditingSessionRegistry:
    """One live editing session per assessment id."""

    def __init__(
        self,
        repository: AssessmentRepository,
        *,
        autosave_delay: float = 2.0,
        autosave_enabled: bool = True,
    ) -> None:
        self.repository = repository
        self.autosave_delay = autosave_delay
        self.autosave_enabled = autosave_enabled
        self._sessions: dict[str, AssessmentEditingSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, assessment_id: str) -> AssessmentEditingSession | None:
        return self._sessions.get(assessment_id)

    async def open(self, assessment_id: str) -> AssessmentEditingSession:
        async with self._lock:
            session = self._sessions.get(assessment_id)
            if session is not None:
                return session
            assessment = await self.repository.get(assessment_id)
            form = await self.repository.forms.get_form(assessment.form_code)
            session = AssessmentEditingSession(
                assessment,
                self.repository,
                form,
                autosave_delay=self.autosave_delay,
                autosave_enabled=self.autosave_enabled,
                on_rebound=self._rekey,
            )
            self._sessions[assessment_id] = session
            logger.info("editing_session_opened", assessment_id=assessment_id)
            return session

    async def close(self, assessment_id: str) -> None:
        session = self._sessions.pop(assessment_id, None)
        if session is None:
            raise AssessmentNotFoundError(f"No open editing session for {assessment_id}")
        await session.close()
        logger.info("editing_session_closed", assessment_id=assessment_id)

    async def discard(self, assessment_id: str) -> None:
        """Drop the session of an assessment whose stored state changed underneath it."""
        session = self._sessions.pop(assessment_id, None)
        if session is not None:
            session.detach()
            await session.autosave.wait_idle()

    def _rekey(self, previous_id: str | None, assessment_id: str) -> None:
        if previous_id is None:
            return
        session = self._sessions.get(previous_id)
        if session is not None and session.assessment_id == assessment_id:
            self._sessions[assessment_id] = self._sessions.pop(previous_id)

    async def close_all(self) -> None:
        for assessment_id in list(self._sessions):
            session = self._sessions.pop(assessment_id)
            try:
                await session.close()
            except Exception as exc:
                logger.warning(
                    "editing_session_close_failed", assessment_id=assessment_id, error=str(exc)
                )
