from __future__ import annotations

from fastapi import HTTPException, Request, status
from src.core.container import Container
from src.domain.errors import (
    AssessmentError,
    AssessmentNotFoundError,
    ConflictError,
    ImmutableAssessmentError,
    InvalidDocumentError,
    InvalidTransitionError,
    StoreError,
    ValidationError,
)
from src.domain.services.editing import EditingSessionRegistry
from src.domain.services.offline_queue import OfflineActionQueue
from src.infrastructure.repositories.assessments import AssessmentRepository
from src.libs.circuit_breaker import CircuitOpenError


def get_container(request: Request) -> Container:
    """Return the container built by the application lifespan."""
    return request.app.state.container


def get_repository(request: Request) -> AssessmentRepository:
    return get_container(request).repository


def get_sessions(request: Request) -> EditingSessionRegistry:
    return get_container(request).sessions


def get_queue(request: Request) -> OfflineActionQueue:
    return get_container(request).queue


def to_http_error(exc: Exception) -> HTTPException:
    """Translate engine errors into HTTP responses."""
    if isinstance(exc, ValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "code": exc.code, "fields": exc.fields},
        )
    if isinstance(exc, AssessmentNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ImmutableAssessmentError | InvalidTransitionError | ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, CircuitOpenError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
            headers={"Retry-After": str(max(1, round(exc.retry_after)))},
        )
    if isinstance(exc, StoreError | InvalidDocumentError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, AssessmentError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


ENGINE_ERRORS = (AssessmentError, CircuitOpenError)
