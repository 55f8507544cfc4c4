"""
Error taxonomy for the assessment engine.

- ValidationError: missing required metadata/fields, surfaced to the user, never retried.
- StoreError: transient I/O against the document store, retried by the offline queue.
- CircuitOpenError: fail fast while the store is considered unhealthy.
- ConflictError: the backing document vanished or changed unexpectedly.
"""

from __future__ import annotations

from typing import Literal

from src.libs.circuit_breaker import CircuitOpenError

Severity = Literal["low", "medium", "high", "critical"]


class ErrorCodes:
    NETWORK_ERROR = "NETWORK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    DATA_NOT_FOUND = "DATA_NOT_FOUND"
    SAVE_CONFLICT = "SAVE_CONFLICT"
    STORE_ERROR = "STORE_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"


class AssessmentError(Exception):
    """Base exception for assessment engine errors."""

    default_code = ErrorCodes.VALIDATION_ERROR
    default_severity: Severity = "medium"
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        severity: Severity | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.severity = severity or self.default_severity
        self.retryable = self.default_retryable if retryable is None else retryable


class ValidationError(AssessmentError):
    """Raised when required fields or metadata are missing or invalid."""

    def __init__(self, message: str, *, fields: list[str] | None = None) -> None:
        super().__init__(message)
        self.fields = fields or []


class ImmutableAssessmentError(AssessmentError):
    """Raised when a submitted or approved assessment is modified."""

    default_code = ErrorCodes.PERMISSION_ERROR


class InvalidTransitionError(AssessmentError):
    """Raised when a workflow transition is not allowed from the current status."""


class AssessmentNotFoundError(AssessmentError):
    """Raised when an assessment document does not exist."""

    default_code = ErrorCodes.DATA_NOT_FOUND


class InvalidDocumentError(AssessmentError):
    """Raised when a stored document does not match the assessment schema."""

    default_code = ErrorCodes.STORE_ERROR
    default_severity: Severity = "high"


class StoreError(AssessmentError):
    """Raised for transient failures of the document store."""

    default_code = ErrorCodes.STORE_ERROR
    default_retryable = True


class ConflictError(AssessmentError):
    """Raised when the backing document vanished or changed unexpectedly."""

    default_code = ErrorCodes.SAVE_CONFLICT


__all__ = [
    "AssessmentError",
    "AssessmentNotFoundError",
    "CircuitOpenError",
    "ConflictError",
    "ErrorCodes",
    "ImmutableAssessmentError",
    "InvalidDocumentError",
    "InvalidTransitionError",
    "StoreError",
    "ValidationError",
]
