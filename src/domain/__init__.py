from src.domain.models import (
    ActionState,
    Answer,
    Assessment,
    AssessmentStatus,
    AssessmentSummary,
    FileAttachment,
    FormDefinition,
    FormField,
    PendingAction,
    Person,
    SyncError,
)

__all__ = [
    "ActionState",
    "Answer",
    "Assessment",
    "AssessmentStatus",
    "AssessmentSummary",
    "FileAttachment",
    "FormDefinition",
    "FormField",
    "PendingAction",
    "Person",
    "SyncError",
]
