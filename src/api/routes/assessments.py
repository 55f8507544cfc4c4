from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from src.api.deps import (
    ENGINE_ERRORS,
    get_container,
    get_repository,
    get_sessions,
    to_http_error,
)
from src.api.schemas.assessments import (
    AnswerEditResponse,
    AnswerResponse,
    AnswerUpdateRequest,
    AssessmentCreateRequest,
    AssessmentResponse,
    MetadataUpdateRequest,
    ReviewRequest,
    SaveResponse,
    ScoreResponse,
    SessionStatusResponse,
    StatisticsResponse,
    SummaryResponse,
    WorkflowResponse,
)
from src.domain.models import Assessment, Person
from src.domain.services.editing import AssessmentEditingSession, EditingSessionRegistry
from src.infrastructure.repositories.assessments import AssessmentRepository, SubmitResult

router = APIRouter(tags=["Assessments"])


def _scores(session: AssessmentEditingSession) -> ScoreResponse:
    totals = session.totals()
    return ScoreResponse(
        total=totals.total,
        average=totals.average,
        max=totals.max,
        percentage=totals.percentage,
        risk=session.suggested_risk(),
    )


def _workflow(result: SubmitResult) -> WorkflowResponse:
    return WorkflowResponse(
        assessment=AssessmentResponse.from_domain(result.assessment),
        summary_updated=result.summary_updated,
        summary_error=result.summary_error,
    )


@router.post(
    "/assessments", response_model=SaveResponse, status_code=status.HTTP_201_CREATED
)
async def create_assessment(
    payload: AssessmentCreateRequest,
    request: Request,
    repository: AssessmentRepository = Depends(get_repository),
) -> SaveResponse:
    """Start a new assessment; earlier assessments of the vendor/form become inactive."""
    settings = get_container(request).settings
    assessment = Assessment(
        vendor_code=payload.vendor_code,
        vendor_name=payload.vendor_name,
        form_code=payload.form_code or settings.default_form_code,
        risk_level=payload.risk_level,
        working_area=payload.working_area,
        category=payload.category,
        reference_doc=payload.reference_doc,
        auditor=Person(**payload.auditor.model_dump()),
        auditee=Person(**payload.auditee.model_dump()),
        updated_by=payload.updated_by,
    )
    try:
        result = await repository.create(assessment)
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return SaveResponse(
        assessment_id=result.assessment_id, result=result.status, action_id=result.action_id
    )


@router.get("/assessments/summaries", response_model=list[SummaryResponse])
async def list_summaries(
    limit: int = Query(20, ge=1, le=200),
    repository: AssessmentRepository = Depends(get_repository),
) -> list[SummaryResponse]:
    try:
        summaries = await repository.list_summaries(limit=limit)
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return [SummaryResponse.from_domain(s) for s in summaries]


@router.get("/assessments/statistics", response_model=StatisticsResponse)
async def get_statistics(
    repository: AssessmentRepository = Depends(get_repository),
) -> StatisticsResponse:
    try:
        stats = await repository.get_statistics()
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return StatisticsResponse(
        total_assessments=stats.total_assessments,
        active_assessments=stats.active_assessments,
        vendors_assessed=stats.vendors_assessed,
        average_score=stats.average_score,
        by_status=stats.by_status,
    )


@router.get("/assessments/{assessment_id}", response_model=AssessmentResponse)
async def get_assessment(
    assessment_id: str,
    repository: AssessmentRepository = Depends(get_repository),
    sessions: EditingSessionRegistry = Depends(get_sessions),
) -> AssessmentResponse:
    """Return the live editing copy when a session is open, else the stored document."""
    session = sessions.get(assessment_id)
    if session is not None:
        return AssessmentResponse.from_domain(session.assessment)
    try:
        assessment = await repository.get(assessment_id)
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return AssessmentResponse.from_domain(assessment)


@router.delete("/assessments/{assessment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_assessment(
    assessment_id: str,
    repository: AssessmentRepository = Depends(get_repository),
    sessions: EditingSessionRegistry = Depends(get_sessions),
) -> None:
    await sessions.discard(assessment_id)
    try:
        await repository.delete(assessment_id)
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc


@router.get("/vendors/{vendor_code}/assessments", response_model=list[AssessmentResponse])
async def list_vendor_assessments(
    vendor_code: str,
    active_only: bool = False,
    repository: AssessmentRepository = Depends(get_repository),
) -> list[AssessmentResponse]:
    try:
        if active_only:
            active = await repository.get_active(vendor_code)
            assessments = [active] if active is not None else []
        else:
            assessments = await repository.list_for_vendor(vendor_code)
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return [AssessmentResponse.from_domain(a) for a in assessments]


@router.patch(
    "/assessments/{assessment_id}/answers/{ck_item}", response_model=AnswerEditResponse
)
async def edit_answer(
    assessment_id: str,
    ck_item: str,
    payload: AnswerUpdateRequest,
    sessions: EditingSessionRegistry = Depends(get_sessions),
) -> AnswerEditResponse:
    """Apply an answer edit; it is persisted by the debounced auto-save."""
    try:
        session = await sessions.open(assessment_id)
        answer = session.edit_answer(
            ck_item,
            score=payload.score,
            comment=payload.comment,
            action=payload.action,
            is_finish=payload.is_finish,
            files=[f.to_domain() for f in payload.files] if payload.files is not None else None,
        )
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return AnswerEditResponse(
        answer=AnswerResponse.from_domain(answer),
        assessment_status=session.assessment.status.value,
        scores=_scores(session),
        session=SessionStatusResponse.from_domain(session.status()),
    )


@router.patch("/assessments/{assessment_id}/metadata", response_model=AssessmentResponse)
async def update_metadata(
    assessment_id: str,
    payload: MetadataUpdateRequest,
    sessions: EditingSessionRegistry = Depends(get_sessions),
) -> AssessmentResponse:
    changes = payload.model_dump(exclude_unset=True)
    try:
        session = await sessions.open(assessment_id)
        assessment = session.update_metadata(**changes)
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return AssessmentResponse.from_domain(assessment)


@router.post("/assessments/{assessment_id}/save", response_model=SaveResponse)
async def save_assessment(
    assessment_id: str,
    sessions: EditingSessionRegistry = Depends(get_sessions),
) -> SaveResponse:
    """Flush pending edits now instead of waiting for the auto-save delay."""
    try:
        session = await sessions.open(assessment_id)
        result = await session.save_now()
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return SaveResponse(
        assessment_id=session.assessment_id,
        result=result.status if result is not None else "unchanged",
        action_id=result.action_id if result is not None else None,
        session=SessionStatusResponse.from_domain(session.status()),
    )


@router.post("/assessments/{assessment_id}/submit", response_model=WorkflowResponse)
async def submit_assessment(
    assessment_id: str,
    sessions: EditingSessionRegistry = Depends(get_sessions),
) -> WorkflowResponse:
    try:
        session = await sessions.open(assessment_id)
        result = await session.submit()
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return _workflow(result)


@router.post("/assessments/{assessment_id}/approve", response_model=WorkflowResponse)
async def approve_assessment(
    assessment_id: str,
    payload: ReviewRequest,
    repository: AssessmentRepository = Depends(get_repository),
    sessions: EditingSessionRegistry = Depends(get_sessions),
) -> WorkflowResponse:
    await sessions.discard(assessment_id)
    try:
        result = await repository.approve(assessment_id, payload.reviewer)
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return _workflow(result)


@router.post("/assessments/{assessment_id}/reject", response_model=WorkflowResponse)
async def reject_assessment(
    assessment_id: str,
    payload: ReviewRequest,
    repository: AssessmentRepository = Depends(get_repository),
    sessions: EditingSessionRegistry = Depends(get_sessions),
) -> WorkflowResponse:
    await sessions.discard(assessment_id)
    try:
        result = await repository.reject(assessment_id, payload.reviewer, payload.comment)
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return _workflow(result)


@router.get("/assessments/{assessment_id}/session", response_model=SessionStatusResponse)
async def get_session_status(
    assessment_id: str,
    sessions: EditingSessionRegistry = Depends(get_sessions),
) -> SessionStatusResponse:
    try:
        session = await sessions.open(assessment_id)
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return SessionStatusResponse.from_domain(session.status())


@router.delete("/assessments/{assessment_id}/session", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(
    assessment_id: str,
    sessions: EditingSessionRegistry = Depends(get_sessions),
) -> None:
    """Flush and close the editing session."""
    try:
        await sessions.close(assessment_id)
    except ENGINE_ERRORS as exc:
        raise to_http_error(exc) from exc
