"""
Assessment workflow rules.

not-started -> in-progress -> completed -> submitted -> approved | rejected

The pre-submission statuses are derived from the answers. Submission,
approval and rejection are explicit actions. Submitted and approved
assessments are locked: any answer or metadata write is rejected.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from src.domain.errors import ImmutableAssessmentError, InvalidTransitionError, ValidationError
from src.domain.models import (
    VALID_SCORES,
    Answer,
    Assessment,
    AssessmentStatus,
    FileAttachment,
    FormDefinition,
    Person,
)
from src.libs.dates import utcnow

logger = structlog.get_logger(__name__)

# Metadata that must be present before an assessment can be submitted.
REQUIRED_METADATA: tuple[tuple[str, Callable[[Assessment], Any]], ...] = (
    ("auditor.name", lambda a: a.auditor.name),
    ("auditee.name", lambda a: a.auditee.name),
    ("risk_level", lambda a: a.risk_level),
    ("working_area", lambda a: a.working_area),
    ("category", lambda a: a.category),
)

EDITABLE_METADATA = frozenset(
    {
        "vendor_name",
        "risk_level",
        "working_area",
        "category",
        "reference_doc",
        "auditor",
        "auditee",
        "updated_by",
    }
)

RISK_LEVELS = ("Low", "Moderate", "High", "")


class AssessmentStateMachine:
    """Derives assessment status and enforces legal transitions."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def required_items(self, assessment: Assessment, form: FormDefinition | None) -> list[str]:
        if form is not None and form.fields:
            return form.required_items
        return [a.ck_item for a in assessment.answers]

    def progress_status(
        self, assessment: Assessment, form: FormDefinition | None = None
    ) -> AssessmentStatus:
        """Status implied by the answers alone."""
        if not any(a.is_scored for a in assessment.answers):
            return AssessmentStatus.NOT_STARTED

        required = self.required_items(assessment, form)
        finished = {a.ck_item for a in assessment.answers if a.is_finish and a.can_finish}
        if required and all(item in finished for item in required):
            return AssessmentStatus.COMPLETED
        return AssessmentStatus.IN_PROGRESS

    def derive_status(
        self, assessment: Assessment, form: FormDefinition | None = None
    ) -> AssessmentStatus:
        if assessment.is_approved:
            return AssessmentStatus.APPROVED
        if assessment.status in (
            AssessmentStatus.SUBMITTED,
            AssessmentStatus.APPROVED,
            AssessmentStatus.REJECTED,
        ):
            return assessment.status
        return self.progress_status(assessment, form)

    def refresh_status(
        self, assessment: Assessment, form: FormDefinition | None = None
    ) -> AssessmentStatus:
        previous = assessment.status
        assessment.status = self.derive_status(assessment, form)
        if assessment.status != previous:
            logger.info(
                "assessment_status_changed",
                assessment_id=assessment.assessment_id,
                from_status=previous.value,
                to_status=assessment.status.value,
            )
        return assessment.status

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def is_locked(self, assessment: Assessment) -> bool:
        return assessment.is_approved or assessment.status in AssessmentStatus.locked_statuses()

    def ensure_mutable(self, assessment: Assessment) -> None:
        if self.is_locked(assessment):
            status = AssessmentStatus.APPROVED if assessment.is_approved else assessment.status
            raise ImmutableAssessmentError(
                f"Assessment {assessment.assessment_id or '(new)'} is {status.value} "
                "and can no longer be modified"
            )

    def missing_metadata(self, assessment: Assessment) -> list[str]:
        missing: list[str] = []
        for name, getter in REQUIRED_METADATA:
            value = getter(assessment)
            if not value or not str(value).strip():
                missing.append(name)
        return missing

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def apply_answer_change(
        self,
        assessment: Assessment,
        ck_item: str,
        *,
        form: FormDefinition | None = None,
        score: str | None = None,
        comment: str | None = None,
        action: str | None = None,
        is_finish: bool | None = None,
        files: list[FileAttachment] | None = None,
    ) -> Answer:
        """Apply an edit to one answer; ``None`` arguments leave the field unchanged.

        Editing the score or comment of a confirmed answer without
        re-confirming it clears ``is_finish``. Confirming an answer without a
        score and a comment is rejected.
        """
        self.ensure_mutable(assessment)

        if score is not None:
            score = score.strip()
            if score and score.lower() not in VALID_SCORES:
                raise ValidationError(
                    f"Invalid score '{score}' for question {ck_item}", fields=["score"]
                )
            score = score.lower()

        answer = assessment.answer(ck_item)
        is_new = answer is None
        if answer is None:
            field = form.get_field(ck_item) if form else None
            if form is not None and form.fields and field is None:
                raise ValidationError(
                    f"Question {ck_item} is not part of form {form.form_code}", fields=["ck_item"]
                )
            answer = Answer(
                ck_item=ck_item,
                ck_type=field.ck_type if field else "M",
                ck_question=field.ck_question if field else "",
            )

        new_score = answer.score if score is None else score
        new_comment = answer.comment if comment is None else comment
        content_changed = new_score != answer.score or new_comment != answer.comment

        if is_finish is None:
            new_finish = answer.is_finish and not content_changed
        else:
            new_finish = is_finish

        if new_finish and not (new_score.strip() and new_comment.strip()):
            raise ValidationError(
                f"Question {ck_item} needs a score and a comment before it can be confirmed",
                fields=["score", "comment"],
            )

        if is_new:
            assessment.answers.append(answer)
        answer.score = new_score
        answer.comment = new_comment
        answer.is_finish = new_finish
        if action is not None:
            answer.action = action
        if files is not None:
            answer.files = list(files)

        self._reopen_if_rejected(assessment)
        self.refresh_status(assessment, form)
        return answer

    def update_metadata(self, assessment: Assessment, **changes: Any) -> Assessment:
        self.ensure_mutable(assessment)
        unknown = set(changes) - EDITABLE_METADATA
        if unknown:
            raise ValidationError(
                f"Unknown metadata field(s): {', '.join(sorted(unknown))}", fields=sorted(unknown)
            )
        if "risk_level" in changes and changes["risk_level"] not in RISK_LEVELS:
            raise ValidationError(
                f"Invalid risk level '{changes['risk_level']}'", fields=["risk_level"]
            )

        for name, value in changes.items():
            if name in ("auditor", "auditee") and isinstance(value, dict):
                value = Person(**value)
            setattr(assessment, name, value)

        self._reopen_if_rejected(assessment)
        return assessment

    def submit(self, assessment: Assessment, form: FormDefinition | None = None) -> Assessment:
        self.ensure_mutable(assessment)
        current = self.progress_status(assessment, form)
        if current != AssessmentStatus.COMPLETED:
            raise InvalidTransitionError(
                f"Only completed assessments can be submitted (current: {current.value})"
            )

        missing = self.missing_metadata(assessment)
        if missing:
            raise ValidationError(
                f"Missing required information: {', '.join(missing)}", fields=missing
            )

        now = self._clock()
        assessment.status = AssessmentStatus.SUBMITTED
        assessment.submitted_at = now
        assessment.is_finished = True
        assessment.finished_at = now
        assessment.reviewed_by = None
        assessment.review_comment = None
        return assessment

    def approve(self, assessment: Assessment, reviewer: str) -> Assessment:
        self._require_submitted(assessment, "approved")
        assessment.status = AssessmentStatus.APPROVED
        assessment.is_approved = True
        assessment.approved_at = self._clock()
        assessment.reviewed_by = reviewer
        return assessment

    def reject(self, assessment: Assessment, reviewer: str, comment: str = "") -> Assessment:
        self._require_submitted(assessment, "rejected")
        assessment.status = AssessmentStatus.REJECTED
        assessment.is_finished = False
        assessment.reviewed_by = reviewer
        assessment.review_comment = comment
        return assessment

    def _require_submitted(self, assessment: Assessment, target: str) -> None:
        if assessment.is_approved or assessment.status != AssessmentStatus.SUBMITTED:
            current = AssessmentStatus.APPROVED if assessment.is_approved else assessment.status
            raise InvalidTransitionError(
                f"Only submitted assessments can be {target} (current: {current.value})"
            )

    def _reopen_if_rejected(self, assessment: Assessment) -> None:
        # A rejected assessment goes back to the editable states on its first edit.
        if assessment.status == AssessmentStatus.REJECTED:
            assessment.status = AssessmentStatus.IN_PROGRESS
