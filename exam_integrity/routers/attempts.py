"""Exam attempt endpoints: start/resume, autosave, submit and grading."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request, status
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel

from exam_integrity.deps import get_scope, get_services
from exam_integrity.models import Submission
from exam_integrity.services import Services
from exam_integrity.services.submissions import GradeOutcome
from exam_integrity.services.tenancy import TenantScope
from exam_integrity.utils import client_ip_from_headers

router = APIRouter()


# --- Request schemas ---


class StartIn(BaseModel):
    session_id: Optional[str] = None


class AnswersIn(BaseModel):
    answers: Dict[str, Any]


class SubmitIn(BaseModel):
    answers: Optional[Dict[str, Any]] = None


class RegradeIn(BaseModel):
    reason: str


def submission_payload(submission: Submission, include_draft: bool = True) -> dict:
    data = {
        "id": submission.id,
        "exam_id": submission.exam_id,
        "student_id": submission.student_id,
        "status": submission.status,
        "answers": submission.answers,
        "started_at": submission.started_at,
        "last_autosave_at": submission.last_autosave_at,
        "submitted_at": submission.submitted_at,
        "graded_at": submission.graded_at,
        "invalidated_at": submission.invalidated_at,
        "score": submission.score,
        "max_score": submission.max_score,
        "overtime": submission.overtime,
    }
    if include_draft:
        data["draft_answers"] = submission.draft_answers
    return data


def _grade_payload(outcome: GradeOutcome) -> dict:
    return {
        "submission_id": outcome.submission_id,
        "score": outcome.score,
        "max_score": outcome.max_score,
        "percentage": outcome.percentage,
        "ungraded_questions": outcome.ungraded_questions,
    }


@router.post("/exams/{exam_id}/attempts")
def start_attempt(
    exam_id: int,
    request: Request,
    payload: Optional[StartIn] = Body(None),
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    """Open the caller's attempt; 201 for a new attempt, 200 when resuming."""
    peer = request.client.host if request.client else None
    result = services.submissions.start_attempt(
        exam_id,
        scope,
        session_fingerprint=payload.session_id if payload else None,
        client_ip=client_ip_from_headers(request.headers, peer),
        user_agent=request.headers.get("user-agent"),
    )
    body = submission_payload(result.submission)
    body["resumed"] = result.resumed
    return JSONResponse(
        status_code=status.HTTP_200_OK if result.resumed else status.HTTP_201_CREATED,
        content=jsonable_encoder(body),
    )


@router.get("/exams/{exam_id}/submissions")
def list_exam_submissions(
    exam_id: int,
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    submissions = services.submissions.list_for_exam(exam_id, scope)
    return {
        "exam_id": exam_id,
        "submissions": [submission_payload(s, include_draft=False) for s in submissions],
    }


@router.get("/submissions/{submission_id}")
def get_submission(
    submission_id: int,
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    submission = services.submissions.get_submission(submission_id, scope)
    return submission_payload(submission)


@router.put("/submissions/{submission_id}/autosave")
def autosave(
    submission_id: int,
    payload: AnswersIn = Body(...),
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    result = services.submissions.autosave(submission_id, payload.answers, scope)
    return {
        "submission_id": result.submission_id,
        "saved_at": result.saved_at,
        "applied": result.applied,
    }


@router.post("/submissions/{submission_id}/submit")
def submit(
    submission_id: int,
    payload: Optional[SubmitIn] = Body(None),
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    result = services.submissions.submit_attempt(
        submission_id, scope, final_answers=payload.answers if payload else None
    )
    body = {
        "submission_id": result.submission_id,
        "status": "graded" if result.grade else "submitted",
        "submitted_at": result.submitted_at,
        "overtime": result.overtime,
    }
    if result.grade is not None:
        body["grade"] = _grade_payload(result.grade)
    return body


@router.post("/submissions/{submission_id}/grade")
def grade(
    submission_id: int,
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    return _grade_payload(services.submissions.grade_attempt(submission_id, scope))


@router.post("/submissions/{submission_id}/regrade")
def regrade(
    submission_id: int,
    payload: RegradeIn = Body(...),
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    return _grade_payload(services.submissions.regrade_attempt(submission_id, scope, payload.reason))
