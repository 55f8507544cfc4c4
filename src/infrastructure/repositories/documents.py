"""
Mapping between domain objects and stored documents.

Stored documents keep the camelCase field names of the assessment
collections. Every read is validated through a pydantic schema so unknown
shapes are rejected (or explicitly upcast) at the store boundary instead of
leaking loosely typed dicts into the domain.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from src.domain.errors import InvalidDocumentError
from src.domain.models import (
    Answer,
    Assessment,
    AssessmentStatus,
    AssessmentSummary,
    FileAttachment,
    FormDefinition,
    FormField,
    Person,
)
from src.infrastructure.store.base import StoreTimestamp
from src.libs.dates import DateParser


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FileDocument(_Document):
    id: str
    name: str = ""
    size: int = 0
    mime_type: str = Field("", alias="mimeType")
    url: str | None = None
    inline_data: str | None = Field(None, alias="inlineData")
    compression_ratio: float | None = Field(None, alias="compressionRatio")


class AnswerDocument(_Document):
    ck_item: str = Field(alias="ckItem")
    ck_type: str = Field("M", alias="ckType")
    ck_question: str = Field("", alias="ckQuestion")
    score: str = ""
    comment: str = ""
    action: str = ""
    is_finish: bool = Field(False, alias="isFinish")
    t_score: float | None = Field(None, alias="tScore")
    files: list[FileDocument] = Field(default_factory=list)

    @field_validator("score", "comment", "action", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, int | float) and not isinstance(value, bool):
            return str(int(value)) if float(value).is_integer() else str(value)
        return value

    @field_validator("t_score", mode="before")
    @classmethod
    def _weighted(cls, value: Any) -> Any:
        # Older documents store the weighted score as a string.
        if value in (None, ""):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @field_validator("files", mode="before")
    @classmethod
    def _upcast_files(cls, value: Any) -> Any:
        # Older documents list plain URLs instead of attachment descriptors.
        if not isinstance(value, list):
            return value
        upcast: list[Any] = []
        for item in value:
            if isinstance(item, str):
                upcast.append({"id": item, "name": item.rsplit("/", 1)[-1], "url": item})
            else:
                upcast.append(item)
        return upcast


class PersonDocument(_Document):
    name: str = ""
    email: str = ""
    position: str = ""


class AssessmentDocument(_Document):
    vd_code: str = Field(alias="vdCode", min_length=1)
    vd_name: str = Field("", alias="vdName")
    form_code: str = Field("CSMChecklist", alias="formCode")
    form_version: str = Field("1", alias="formVersion")
    risk_level: Literal["Low", "Moderate", "High", ""] = Field("", alias="riskLevel")
    working_area: str | None = Field(None, alias="vdWorkingArea")
    category: str | None = Field(None, alias="vdCategory")
    reference_doc: str | None = Field(None, alias="vdRefDoc")
    auditor: PersonDocument = Field(default_factory=PersonDocument)
    auditee: PersonDocument = Field(default_factory=PersonDocument)
    status: AssessmentStatus | None = None
    is_active: bool = Field(True, alias="isActive")
    is_approved: bool = Field(False, alias="isApproved")
    is_finished: bool = Field(False, alias="isFinished")
    created_at: Any = Field(None, alias="createdAt")
    updated_at: Any = Field(None, alias="updatedAt")
    submitted_at: Any = Field(None, alias="submittedAt")
    finished_at: Any = Field(None, alias="finishedAt")
    approved_at: Any = Field(None, alias="approvedAt")
    reviewed_by: str | None = Field(None, alias="reviewedBy")
    review_comment: str | None = Field(None, alias="reviewComment")
    update_by: str = Field("", alias="updateBy")
    final_score: float = Field(0.0, alias="finalScore")
    avg_score: float = Field(0.0, alias="avgScore")
    max_score: float = Field(0.0, alias="maxScore")
    answers: list[AnswerDocument] = Field(default_factory=list)

    @field_validator("risk_level", mode="before")
    @classmethod
    def _risk(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("auditor", "auditee", mode="before")
    @classmethod
    def _person(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            return {"name": value}
        return value

    @field_validator("final_score", "avg_score", "max_score", mode="before")
    @classmethod
    def _number(cls, value: Any) -> Any:
        if value in (None, ""):
            return 0.0
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0


class FormFieldDocument(_Document):
    ck_item: str = Field(alias="ckItem")
    ck_type: str = Field("M", alias="ckType")
    ck_question: str = Field("", alias="ckQuestion")
    ck_requirement: str = Field("", alias="ckRequirement")
    f_score: str | float | None = Field(None, alias="fScore")
    required: bool = True
    allow_attach: bool = Field(False, alias="allowAttach")


class FormDocument(_Document):
    form_code: str = Field(alias="formCode")
    form_title: str = Field("", alias="formTitle")
    form_version: str = Field("1", alias="formVersion")
    is_active: bool = Field(True, alias="isActive")
    fields: list[FormFieldDocument] = Field(default_factory=list)

    @field_validator("form_version", mode="before")
    @classmethod
    def _version(cls, value: Any) -> Any:
        return "1" if value is None else str(value)


# ----------------------------------------------------------------------
# Write side
# ----------------------------------------------------------------------


def prepare_store_data(data: Any) -> Any:
    """Strip unset (None) fields and convert datetimes to StoreTimestamp."""
    if isinstance(data, dict):
        return {key: prepare_store_data(value) for key, value in data.items() if value is not None}
    if isinstance(data, list):
        return [prepare_store_data(item) for item in data if item is not None]
    if isinstance(data, datetime):
        return StoreTimestamp.from_datetime(data)
    return data


def to_json_payload(data: Any) -> Any:
    """JSON-safe copy of a document (datetimes as ISO strings) for the offline queue."""
    if isinstance(data, dict):
        return {key: to_json_payload(value) for key, value in data.items() if value is not None}
    if isinstance(data, list):
        return [to_json_payload(item) for item in data]
    if isinstance(data, datetime):
        return data.isoformat()
    if isinstance(data, StoreTimestamp):
        return data.to_datetime().isoformat()
    return data


def _file_to_document(attachment: FileAttachment) -> dict[str, Any]:
    return {
        "id": attachment.id,
        "name": attachment.name,
        "size": attachment.size,
        "mimeType": attachment.mime_type,
        "url": attachment.url,
        "inlineData": attachment.inline_data,
        "compressionRatio": attachment.compression_ratio,
    }


def _answer_to_document(answer: Answer) -> dict[str, Any]:
    return {
        "ckItem": answer.ck_item,
        "ckType": answer.ck_type,
        "ckQuestion": answer.ck_question,
        "score": answer.score,
        "comment": answer.comment,
        "action": answer.action,
        "isFinish": answer.is_finish,
        "tScore": answer.weighted_score,
        "files": [_file_to_document(f) for f in answer.files],
    }


def assessment_to_document(assessment: Assessment) -> dict[str, Any]:
    return {
        "vdCode": assessment.vendor_code,
        "vdName": assessment.vendor_name,
        "formCode": assessment.form_code,
        "formVersion": assessment.form_version,
        "riskLevel": assessment.risk_level,
        "vdWorkingArea": assessment.working_area,
        "vdCategory": assessment.category,
        "vdRefDoc": assessment.reference_doc,
        "auditor": {"name": assessment.auditor.name, "email": assessment.auditor.email},
        "auditee": {
            "name": assessment.auditee.name,
            "email": assessment.auditee.email,
            "position": assessment.auditee.position,
        },
        "status": assessment.status.value,
        "isActive": assessment.is_active,
        "isApproved": assessment.is_approved,
        "isFinished": assessment.is_finished,
        "createdAt": assessment.created_at,
        "updatedAt": assessment.updated_at,
        "submittedAt": assessment.submitted_at,
        "finishedAt": assessment.finished_at,
        "approvedAt": assessment.approved_at,
        "reviewedBy": assessment.reviewed_by,
        "reviewComment": assessment.review_comment,
        "updateBy": assessment.updated_by,
        "finalScore": assessment.total_score,
        "avgScore": assessment.average_score,
        "maxScore": assessment.max_score,
        "answers": [_answer_to_document(a) for a in assessment.answers],
    }


def summary_to_document(summary: AssessmentSummary) -> dict[str, Any]:
    return {
        "vdCode": summary.vendor_code,
        "vdName": summary.vendor_name,
        "lastAssessmentId": summary.last_assessment_id,
        "lastAssessmentDate": summary.last_assessment_date,
        "totalScore": summary.total_score,
        "avgScore": summary.average_score,
        "maxScore": summary.max_score,
        "riskLevel": summary.risk_level,
        "status": summary.status,
        "updatedAt": summary.updated_at,
    }


def form_to_document(form: FormDefinition) -> dict[str, Any]:
    return {
        "formCode": form.form_code,
        "formTitle": form.title,
        "formVersion": form.form_version,
        "isActive": form.is_active,
        "fields": [
            {
                "ckItem": f.ck_item,
                "ckType": f.ck_type,
                "ckQuestion": f.ck_question,
                "ckRequirement": f.ck_requirement,
                "fScore": f.f_score,
                "required": f.required,
                "allowAttach": f.allow_attach,
            }
            for f in form.fields
        ],
    }


# ----------------------------------------------------------------------
# Read side
# ----------------------------------------------------------------------


def document_to_assessment(
    data: dict[str, Any],
    *,
    assessment_id: str | None,
    date_parser: DateParser,
) -> Assessment:
    try:
        doc = AssessmentDocument.model_validate(data)
    except PydanticValidationError as exc:
        raise InvalidDocumentError(
            f"Assessment document {assessment_id or '(new)'} has an unexpected shape: "
            f"{exc.error_count()} validation error(s)"
        ) from exc

    return Assessment(
        assessment_id=assessment_id,
        vendor_code=doc.vd_code,
        vendor_name=doc.vd_name,
        form_code=doc.form_code,
        form_version=doc.form_version,
        risk_level=doc.risk_level,
        working_area=doc.working_area or "",
        category=doc.category or "",
        reference_doc=doc.reference_doc or "",
        auditor=Person(name=doc.auditor.name, email=doc.auditor.email),
        auditee=Person(
            name=doc.auditee.name, email=doc.auditee.email, position=doc.auditee.position
        ),
        status=doc.status or AssessmentStatus.NOT_STARTED,
        is_active=doc.is_active,
        is_approved=doc.is_approved,
        is_finished=doc.is_finished,
        created_at=date_parser.parse(doc.created_at),
        updated_at=date_parser.parse(doc.updated_at),
        submitted_at=date_parser.parse(doc.submitted_at),
        finished_at=date_parser.parse(doc.finished_at),
        approved_at=date_parser.parse(doc.approved_at),
        reviewed_by=doc.reviewed_by,
        review_comment=doc.review_comment,
        updated_by=doc.update_by,
        total_score=doc.final_score,
        average_score=doc.avg_score,
        max_score=doc.max_score,
        answers=[
            Answer(
                ck_item=a.ck_item,
                ck_type=a.ck_type,
                ck_question=a.ck_question,
                score=a.score,
                comment=a.comment,
                action=a.action,
                is_finish=a.is_finish,
                weighted_score=a.t_score,
                files=[
                    FileAttachment(
                        id=f.id,
                        name=f.name,
                        size=f.size,
                        mime_type=f.mime_type,
                        url=f.url,
                        inline_data=f.inline_data,
                        compression_ratio=f.compression_ratio,
                    )
                    for f in a.files
                ],
            )
            for a in doc.answers
        ],
    )


def document_has_status(data: dict[str, Any]) -> bool:
    return bool(data.get("status"))


def document_to_summary(data: dict[str, Any], date_parser: DateParser) -> AssessmentSummary:
    risk = data.get("riskLevel") or ""
    if risk not in ("Low", "Moderate", "High", ""):
        raise InvalidDocumentError(f"Summary for {data.get('vdCode')} has invalid risk '{risk}'")
    try:
        return AssessmentSummary(
            vendor_code=str(data["vdCode"]),
            vendor_name=str(data.get("vdName") or ""),
            last_assessment_id=str(data["lastAssessmentId"]),
            last_assessment_date=date_parser.parse_or_now(data.get("lastAssessmentDate")),
            total_score=float(data.get("totalScore") or 0),
            average_score=float(data.get("avgScore") or 0),
            max_score=float(data.get("maxScore") or 0),
            risk_level=risk,
            status=str(data.get("status") or ""),
            updated_at=date_parser.parse_or_now(data.get("updatedAt")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidDocumentError(f"Summary document has an unexpected shape: {exc}") from exc


def document_to_form(data: dict[str, Any]) -> FormDefinition:
    try:
        doc = FormDocument.model_validate(data)
    except PydanticValidationError as exc:
        raise InvalidDocumentError(
            f"Form document has an unexpected shape: {exc.error_count()} validation error(s)"
        ) from exc
    return FormDefinition(
        form_code=doc.form_code,
        form_version=doc.form_version,
        title=doc.form_title,
        is_active=doc.is_active,
        fields=[
            FormField(
                ck_item=f.ck_item,
                ck_type=f.ck_type,
                ck_question=f.ck_question,
                ck_requirement=f.ck_requirement,
                f_score=f.f_score,
                required=f.required,
                allow_attach=f.allow_attach,
            )
            for f in doc.fields
        ],
    )
