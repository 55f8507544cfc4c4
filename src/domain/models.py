from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

RiskLevel = Literal["Low", "Moderate", "High", ""]
Priority = Literal["high", "normal", "low"]

NOT_APPLICABLE = "n/a"
VALID_SCORES = ("0", "1", "2", NOT_APPLICABLE)


class AssessmentStatus(str, enum.Enum):
    """Assessment workflow status."""

    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def editable_statuses(cls) -> tuple[AssessmentStatus, ...]:
        return (cls.NOT_STARTED, cls.IN_PROGRESS, cls.COMPLETED, cls.REJECTED)

    @classmethod
    def locked_statuses(cls) -> tuple[AssessmentStatus, ...]:
        return (cls.SUBMITTED, cls.APPROVED)


class ActionState(str, enum.Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class Person:
    """Auditor or auditee contact details."""

    name: str = ""
    email: str = ""
    position: str = ""


@dataclass(slots=True)
class FileAttachment:
    id: str
    name: str
    size: int = 0
    mime_type: str = ""
    url: str | None = None
    inline_data: str | None = None
    compression_ratio: float | None = None


@dataclass(slots=True)
class Answer:
    """Response to a single checklist question."""

    ck_item: str
    score: str = ""
    comment: str = ""
    action: str = ""
    is_finish: bool = False
    ck_type: str = "M"
    ck_question: str = ""
    weighted_score: float | None = None
    files: list[FileAttachment] = field(default_factory=list)

    @property
    def is_scored(self) -> bool:
        return bool(self.score and self.score.strip())

    @property
    def can_finish(self) -> bool:
        return self.is_scored and bool(self.comment and self.comment.strip())


@dataclass(slots=True)
class FormField:
    """One question of a form definition (read-only input)."""

    ck_item: str
    ck_question: str = ""
    ck_requirement: str = ""
    ck_type: str = "M"
    f_score: str | float | None = None
    required: bool = True
    allow_attach: bool = False


@dataclass(slots=True)
class FormDefinition:
    form_code: str
    fields: list[FormField] = field(default_factory=list)
    form_version: str = "1"
    title: str = ""
    is_active: bool = True

    def get_field(self, ck_item: str) -> FormField | None:
        return next((f for f in self.fields if f.ck_item == ck_item), None)

    @property
    def required_items(self) -> list[str]:
        return [f.ck_item for f in self.fields if f.required]


@dataclass(slots=True)
class Assessment:
    """One evaluation of one vendor against one form version."""

    vendor_code: str
    form_code: str
    vendor_name: str = ""
    form_version: str = "1"
    assessment_id: str | None = None
    risk_level: RiskLevel = ""
    working_area: str = ""
    category: str = ""
    reference_doc: str = ""
    auditor: Person = field(default_factory=Person)
    auditee: Person = field(default_factory=Person)
    status: AssessmentStatus = AssessmentStatus.NOT_STARTED
    is_active: bool = True
    is_approved: bool = False
    is_finished: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    submitted_at: datetime | None = None
    finished_at: datetime | None = None
    approved_at: datetime | None = None
    reviewed_by: str | None = None
    review_comment: str | None = None
    updated_by: str = ""
    total_score: float = 0.0
    average_score: float = 0.0
    max_score: float = 0.0
    answers: list[Answer] = field(default_factory=list)

    def answer(self, ck_item: str) -> Answer | None:
        return next((a for a in self.answers if a.ck_item == ck_item), None)


@dataclass(slots=True)
class PendingAction:
    """A queued mutation intent awaiting execution."""

    id: str
    type: str
    payload: dict[str, Any]
    created_at: datetime
    retry_count: int = 0
    priority: Priority = "normal"
    resource_key: str | None = None
    state: ActionState = ActionState.PENDING
    next_attempt_at: float = 0.0
    last_error: str | None = None
    sequence: int = 0


@dataclass(slots=True)
class SyncError:
    action_id: str
    action_type: str
    message: str
    failed_at: datetime
    attempts: int
    payload: dict[str, Any] = field(default_factory=dict)
    resource_key: str | None = None
    priority: Priority = "normal"


@dataclass(slots=True)
class AssessmentSummary:
    """Latest-assessment rollup per vendor."""

    vendor_code: str
    vendor_name: str
    last_assessment_id: str
    last_assessment_date: datetime
    total_score: float
    average_score: float
    max_score: float
    risk_level: RiskLevel
    status: str
    updated_at: datetime
