"""Exam attempt endpoints.

Lifecycle:
  POST /v1/attempts/start              -> start(exam_id, caller)   201
  POST /v1/attempts/{id}/answers       -> submit_answers           204
  POST /v1/attempts/{id}/finish        -> finish                   200

Reads and admin:
  GET    /v1/attempts/{id}
  GET    /v1/attempts/{id}/answers
  GET    /v1/attempts/{id}/answers/{answer_id}
  GET    /v1/attempts/by-exam/{exam_id}       (admin)
  GET    /v1/attempts/student/{student_id}    (self or admin)
  DELETE /v1/attempts/{id}                    (admin)

Students may only touch their own attempts; admins may touch any.
"""

from __future__ import annotations

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel

from app.api.access import caller_id, check_self_or_admin
from app.api.dependencies import get_attempt_service, require_any_role, require_role
from app.models.attempt import Answer, Attempt, AttemptSummary
from app.models.principal import ROLE_ADMIN, ROLE_STUDENT, Principal
from app.services.attempt_service import AnswerSubmission, AttemptService
from app.services.errors import (
    AttemptError,
    AttemptValidationError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/attempts", tags=["attempts"])

_require_participant = require_any_role({ROLE_ADMIN, ROLE_STUDENT})
_require_admin = require_role(ROLE_ADMIN)

Participant = Annotated[Principal, Depends(_require_participant)]
Service = Annotated[AttemptService, Depends(get_attempt_service)]


# --- Pydantic schemas ---


class StartAttemptIn(BaseModel):
    exam_id: UUID


class AnswerIn(BaseModel):
    question_id: UUID
    selected_option_ids: list[UUID]


class SubmitAnswersIn(BaseModel):
    answers: list[AnswerIn]


class AttemptOut(BaseModel):
    id: str
    exam_id: str
    student_id: str
    status: str
    started_at: int
    created_at: int
    updated_at: int
    completed_at: int | None = None
    score: int | None = None
    total_points: int | None = None
    earned_points: int | None = None
    time_spent: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class AttemptSummaryOut(BaseModel):
    id: str
    completed_at: int
    status: str
    score: int
    total_points: int
    earned_points: int


class AnswerOut(BaseModel):
    id: str
    attempt_id: str
    question_id: str
    selected_option_ids: list[str]
    is_correct: bool
    points_earned: int
    created_at: int
    updated_at: int


def _attempt_out(attempt: Attempt) -> AttemptOut:
    return AttemptOut(
        id=str(attempt.id),
        exam_id=str(attempt.exam_id),
        student_id=str(attempt.student_id),
        status=attempt.status.value,
        started_at=attempt.started_at,
        completed_at=attempt.completed_at,
        score=attempt.score,
        total_points=attempt.total_points,
        earned_points=attempt.earned_points,
        time_spent=attempt.time_spent,
        ip_address=attempt.ip_address,
        user_agent=attempt.user_agent,
        created_at=attempt.created_at,
        updated_at=attempt.updated_at,
    )


def _summary_out(summary: AttemptSummary) -> AttemptSummaryOut:
    return AttemptSummaryOut(
        id=str(summary.id),
        completed_at=summary.completed_at,
        status=summary.status.value,
        score=summary.score,
        total_points=summary.total_points,
        earned_points=summary.earned_points,
    )


def _answer_out(answer: Answer) -> AnswerOut:
    return AnswerOut(
        id=str(answer.id),
        attempt_id=str(answer.attempt_id),
        question_id=str(answer.question_id),
        selected_option_ids=[str(o) for o in answer.selected_option_ids],
        is_correct=answer.is_correct,
        points_earned=answer.points_earned,
        created_at=answer.created_at,
        updated_at=answer.updated_at,
    )


# --- Error translation ---


def _http_error(exc: AttemptError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, AttemptValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)
        )
    if isinstance(exc, PersistenceError):
        logger.error("Persistence failure: %s", exc, exc_info=exc)
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="storage unavailable",
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


async def _authorize_write(
    service: AttemptService, principal: Principal, attempt_id: UUID
) -> None:
    """Ownership check ahead of a lifecycle write.

    A missing attempt is left for the engine to reject (409), the same
    answer a completed one gets.
    """
    try:
        attempt = await service.get_attempt(attempt_id)
    except NotFoundError:
        return
    except AttemptError as e:
        raise _http_error(e) from None
    check_self_or_admin(principal, attempt.student_id)


# --- Lifecycle ---


@router.post("/start", response_model=AttemptOut, status_code=status.HTTP_201_CREATED)
async def start_attempt(
    body: StartAttemptIn,
    request: Request,
    principal: Participant,
    service: Service,
) -> AttemptOut:
    student_id = caller_id(principal)
    try:
        attempt = await service.start(
            body.exam_id,
            student_id,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except AttemptError as e:
        logger.warning(
            "Start rejected exam=%s user=%s: %s", body.exam_id, student_id, e
        )
        raise _http_error(e) from None
    return _attempt_out(attempt)


@router.post("/{attempt_id}/answers", status_code=status.HTTP_204_NO_CONTENT)
async def submit_answers(
    attempt_id: UUID,
    body: SubmitAnswersIn,
    principal: Participant,
    service: Service,
) -> Response:
    await _authorize_write(service, principal, attempt_id)
    submissions = [
        AnswerSubmission(
            question_id=a.question_id,
            selected_option_ids=tuple(a.selected_option_ids),
        )
        for a in body.answers
    ]
    try:
        await service.submit_answers(attempt_id, submissions)
    except AttemptError as e:
        logger.warning("Submit rejected attempt=%s: %s", attempt_id, e)
        raise _http_error(e) from None
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{attempt_id}/finish", response_model=AttemptSummaryOut)
async def finish_attempt(
    attempt_id: UUID,
    principal: Participant,
    service: Service,
) -> AttemptSummaryOut:
    await _authorize_write(service, principal, attempt_id)
    try:
        summary = await service.finish(attempt_id)
    except AttemptError as e:
        logger.warning("Finish rejected attempt=%s: %s", attempt_id, e)
        raise _http_error(e) from None
    return _summary_out(summary)


# --- Reads and admin ---


@router.get("/by-exam/{exam_id}", response_model=list[AttemptOut])
async def list_attempts_by_exam(
    exam_id: UUID,
    _admin: Annotated[Principal, Depends(_require_admin)],
    service: Service,
) -> list[AttemptOut]:
    try:
        attempts = await service.list_by_exam(exam_id)
    except AttemptError as e:
        raise _http_error(e) from None
    return [_attempt_out(a) for a in attempts]


@router.get("/student/{student_id}", response_model=list[AttemptOut])
async def list_attempts_by_student(
    student_id: UUID,
    principal: Participant,
    service: Service,
) -> list[AttemptOut]:
    check_self_or_admin(principal, student_id)
    try:
        attempts = await service.list_by_student(student_id)
    except AttemptError as e:
        raise _http_error(e) from None
    return [_attempt_out(a) for a in attempts]


@router.get("/{attempt_id}", response_model=AttemptOut)
async def get_attempt(
    attempt_id: UUID,
    principal: Participant,
    service: Service,
) -> AttemptOut:
    try:
        attempt = await service.get_attempt(attempt_id)
    except AttemptError as e:
        raise _http_error(e) from None
    check_self_or_admin(principal, attempt.student_id)
    return _attempt_out(attempt)


@router.get("/{attempt_id}/answers", response_model=list[AnswerOut])
async def list_attempt_answers(
    attempt_id: UUID,
    principal: Participant,
    service: Service,
) -> list[AnswerOut]:
    try:
        attempt = await service.get_attempt(attempt_id)
        check_self_or_admin(principal, attempt.student_id)
        answers = await service.list_answers(attempt_id)
    except AttemptError as e:
        raise _http_error(e) from None
    return [_answer_out(a) for a in answers]


@router.get("/{attempt_id}/answers/{answer_id}", response_model=AnswerOut)
async def get_attempt_answer(
    attempt_id: UUID,
    answer_id: UUID,
    principal: Participant,
    service: Service,
) -> AnswerOut:
    try:
        attempt = await service.get_attempt(attempt_id)
        check_self_or_admin(principal, attempt.student_id)
        answer = await service.get_answer(attempt_id, answer_id)
    except AttemptError as e:
        raise _http_error(e) from None
    return _answer_out(answer)


@router.delete("/{attempt_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_attempt(
    attempt_id: UUID,
    _admin: Annotated[Principal, Depends(_require_admin)],
    service: Service,
) -> Response:
    try:
        await service.delete_attempt(attempt_id)
    except AttemptError as e:
        raise _http_error(e) from None
    return Response(status_code=status.HTTP_204_NO_CONTENT)
