"""Proctoring event ingestion and the review dashboard endpoints."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request, status
from pydantic import BaseModel

from exam_integrity.deps import get_scope, get_services
from exam_integrity.models import ProctoringEvent
from exam_integrity.services import Services
from exam_integrity.services.tenancy import TenantScope
from exam_integrity.utils import client_ip_from_headers

router = APIRouter()


class EventIn(BaseModel):
    event_type: str
    question_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    client_timestamp: Optional[str] = None


class ReviewIn(BaseModel):
    action: str
    notes: Optional[str] = None


def event_payload(event: ProctoringEvent) -> dict:
    return {
        "id": event.id,
        "submission_id": event.submission_id,
        "student_id": event.student_id,
        "exam_id": event.exam_id,
        "event_type": event.event_type,
        "severity": event.severity,
        "timestamp": event.timestamp,
        "time_from_start": event.time_from_start,
        "question_id": event.question_id,
        "metadata": event.event_metadata,
        "late": event.late,
        "reviewed": event.reviewed,
        "reviewed_by": event.reviewed_by,
        "reviewed_at": event.reviewed_at,
        "review_notes": event.review_notes,
        "action_taken": event.action_taken,
    }


@router.post("/submissions/{submission_id}/events", status_code=status.HTTP_201_CREATED)
def record_event(
    submission_id: int,
    request: Request,
    payload: EventIn = Body(...),
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    metadata = dict(payload.metadata or {})
    peer = request.client.host if request.client else None
    metadata.setdefault("ip_address", client_ip_from_headers(request.headers, peer))
    metadata.setdefault("user_agent", request.headers.get("user-agent"))

    recorded = services.integrity.record_event(
        submission_id,
        payload.event_type,
        scope,
        question_id=payload.question_id,
        metadata=metadata,
        client_timestamp=payload.client_timestamp,
    )
    return {
        "event_id": recorded.event_id,
        "event_type": recorded.event_type,
        "severity": recorded.severity,
        "timestamp": recorded.timestamp,
    }


@router.get("/submissions/{submission_id}/events")
def list_events(
    submission_id: int,
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    events = services.integrity.events_for_submission(submission_id, scope)
    return {"submission_id": submission_id, "events": [event_payload(e) for e in events]}


@router.get("/submissions/{submission_id}/integrity")
def integrity_summary(
    submission_id: int,
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    summary = services.integrity.integrity_summary(submission_id, scope)
    return {
        "submission_id": summary.submission_id,
        "score": summary.score,
        "rating": summary.rating,
        "event_count": summary.event_count,
        "unreviewed_count": summary.unreviewed_count,
        "highest_severity": summary.highest_severity,
        "by_type": summary.by_type,
    }


@router.get("/exams/{exam_id}/events/unreviewed")
def unreviewed_for_exam(
    exam_id: int,
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    grouped = services.integrity.unreviewed_by_severity(exam_id, scope)
    return {
        "exam_id": exam_id,
        "events": {severity: [event_payload(e) for e in events] for severity, events in grouped.items()},
    }


@router.get("/students/{student_id}/events/unreviewed")
def unreviewed_for_student(
    student_id: int,
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    events = services.integrity.unreviewed_for_student(student_id, scope)
    return {"student_id": student_id, "events": [event_payload(e) for e in events]}


@router.post("/events/{event_id}/review")
def review_event(
    event_id: int,
    payload: ReviewIn = Body(...),
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    result = services.review.review_event(event_id, scope, payload.action, notes=payload.notes)
    body = event_payload(result.event)
    body["submission_status"] = result.submission_status
    return body
