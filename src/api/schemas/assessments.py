from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field
from src.domain.models import Answer, Assessment, AssessmentSummary, FileAttachment
from src.domain.services.editing import SessionStatus
from src.domain.services.scoring import ScoreTotals, classify_risk

RiskLevelField = Literal["Low", "Moderate", "High", ""]


class PersonPayload(BaseModel):
    name: str = ""
    email: str = ""
    position: str = ""


class FilePayload(BaseModel):
    id: str
    name: str
    size: int = 0
    mime_type: str = ""
    url: str | None = None
    inline_data: str | None = None
    compression_ratio: float | None = None

    def to_domain(self) -> FileAttachment:
        return FileAttachment(**self.model_dump())


class AnswerResponse(BaseModel):
    ck_item: str
    ck_type: str
    ck_question: str
    score: str
    comment: str
    action: str
    is_finish: bool
    weighted_score: float | None = None
    files: list[FilePayload] = []

    @classmethod
    def from_domain(cls, answer: Answer) -> AnswerResponse:
        return cls(
            ck_item=answer.ck_item,
            ck_type=answer.ck_type,
            ck_question=answer.ck_question,
            score=answer.score,
            comment=answer.comment,
            action=answer.action,
            is_finish=answer.is_finish,
            weighted_score=answer.weighted_score,
            files=[FilePayload(**_file_fields(f)) for f in answer.files],
        )


def _file_fields(attachment: FileAttachment) -> dict:
    return {
        "id": attachment.id,
        "name": attachment.name,
        "size": attachment.size,
        "mime_type": attachment.mime_type,
        "url": attachment.url,
        "inline_data": attachment.inline_data,
        "compression_ratio": attachment.compression_ratio,
    }


class AssessmentCreateRequest(BaseModel):
    vendor_code: str = Field(..., min_length=1)
    vendor_name: str = ""
    form_code: str | None = Field(None, description="Defaults to the configured checklist form")
    risk_level: RiskLevelField = ""
    working_area: str = ""
    category: str = ""
    reference_doc: str = ""
    auditor: PersonPayload = Field(default_factory=PersonPayload)
    auditee: PersonPayload = Field(default_factory=PersonPayload)
    updated_by: str = ""


class AssessmentResponse(BaseModel):
    assessment_id: str | None
    vendor_code: str
    vendor_name: str
    form_code: str
    form_version: str
    status: str
    risk_level: str
    suggested_risk: str
    working_area: str
    category: str
    reference_doc: str
    auditor: PersonPayload
    auditee: PersonPayload
    is_active: bool
    is_approved: bool
    is_finished: bool
    total_score: float
    average_score: float
    max_score: float
    percentage: float
    created_at: datetime | None = None
    updated_at: datetime | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    reviewed_by: str | None = None
    review_comment: str | None = None
    updated_by: str = ""
    answers: list[AnswerResponse] = []

    @classmethod
    def from_domain(cls, assessment: Assessment) -> AssessmentResponse:
        totals = ScoreTotals(
            total=assessment.total_score,
            average=assessment.average_score,
            max=assessment.max_score,
        )
        return cls(
            assessment_id=assessment.assessment_id,
            vendor_code=assessment.vendor_code,
            vendor_name=assessment.vendor_name,
            form_code=assessment.form_code,
            form_version=assessment.form_version,
            status=assessment.status.value,
            risk_level=assessment.risk_level,
            suggested_risk=classify_risk(assessment.average_score),
            working_area=assessment.working_area,
            category=assessment.category,
            reference_doc=assessment.reference_doc,
            auditor=PersonPayload(
                name=assessment.auditor.name,
                email=assessment.auditor.email,
                position=assessment.auditor.position,
            ),
            auditee=PersonPayload(
                name=assessment.auditee.name,
                email=assessment.auditee.email,
                position=assessment.auditee.position,
            ),
            is_active=assessment.is_active,
            is_approved=assessment.is_approved,
            is_finished=assessment.is_finished,
            total_score=assessment.total_score,
            average_score=assessment.average_score,
            max_score=assessment.max_score,
            percentage=totals.percentage,
            created_at=assessment.created_at,
            updated_at=assessment.updated_at,
            submitted_at=assessment.submitted_at,
            approved_at=assessment.approved_at,
            reviewed_by=assessment.reviewed_by,
            review_comment=assessment.review_comment,
            updated_by=assessment.updated_by,
            answers=[AnswerResponse.from_domain(a) for a in assessment.answers],
        )


class AnswerUpdateRequest(BaseModel):
    """Fields left out of the request are not changed."""

    score: str | None = Field(None, description="0, 1, 2, n/a or empty to clear")
    comment: str | None = None
    action: str | None = None
    is_finish: bool | None = None
    files: list[FilePayload] | None = None


class MetadataUpdateRequest(BaseModel):
    vendor_name: str | None = None
    risk_level: RiskLevelField | None = None
    working_area: str | None = None
    category: str | None = None
    reference_doc: str | None = None
    auditor: PersonPayload | None = None
    auditee: PersonPayload | None = None
    updated_by: str | None = None


class SessionStatusResponse(BaseModel):
    assessment_id: str | None
    status: str
    is_saving: bool
    has_unsaved_changes: bool
    last_saved: str | None = None
    last_result: str | None = None
    error: str | None = None
    save_text: str

    @classmethod
    def from_domain(cls, status: SessionStatus) -> SessionStatusResponse:
        return cls(
            assessment_id=status.assessment_id,
            status=status.status,
            is_saving=status.is_saving,
            has_unsaved_changes=status.has_unsaved_changes,
            last_saved=status.last_saved,
            last_result=status.last_result,
            error=status.error,
            save_text=status.save_text,
        )


class ScoreResponse(BaseModel):
    total: float
    average: float
    max: float
    percentage: float
    risk: str


class AnswerEditResponse(BaseModel):
    answer: AnswerResponse
    assessment_status: str
    scores: ScoreResponse
    session: SessionStatusResponse


class SaveResponse(BaseModel):
    assessment_id: str | None
    result: Literal["saved", "created", "recreated", "queued", "unchanged"]
    action_id: str | None = None
    session: SessionStatusResponse | None = None


class ReviewRequest(BaseModel):
    reviewer: str = Field(..., min_length=1)
    comment: str = ""


class WorkflowResponse(BaseModel):
    assessment: AssessmentResponse
    summary_updated: bool
    summary_error: str | None = None


class SummaryResponse(BaseModel):
    vendor_code: str
    vendor_name: str
    last_assessment_id: str
    last_assessment_date: datetime
    total_score: float
    average_score: float
    max_score: float
    risk_level: str
    status: str
    updated_at: datetime

    @classmethod
    def from_domain(cls, summary: AssessmentSummary) -> SummaryResponse:
        return cls(
            vendor_code=summary.vendor_code,
            vendor_name=summary.vendor_name,
            last_assessment_id=summary.last_assessment_id,
            last_assessment_date=summary.last_assessment_date,
            total_score=summary.total_score,
            average_score=summary.average_score,
            max_score=summary.max_score,
            risk_level=summary.risk_level,
            status=summary.status,
            updated_at=summary.updated_at,
        )


class StatisticsResponse(BaseModel):
    total_assessments: int
    active_assessments: int
    vendors_assessed: int
    average_score: float
    by_status: dict[str, int]
