"""Batch roster endpoints for institute admins."""

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from exam_integrity.deps import get_scope, get_services
from exam_integrity.services import Services
from exam_integrity.services.enrollment import EnrollmentResult
from exam_integrity.services.tenancy import TenantScope

router = APIRouter()


class EnrollIn(BaseModel):
    student_id: int


def _result_payload(result: EnrollmentResult) -> dict:
    return {
        "batch_id": result.batch_id,
        "student_id": result.student_id,
        "outcome": result.outcome,
        "active_count": result.active_count,
    }


@router.post("/{batch_id}/enrollments")
def enroll_student(
    batch_id: int,
    payload: EnrollIn = Body(...),
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    result = services.enrollment.enroll(payload.student_id, batch_id, scope)
    return _result_payload(result)


@router.post("/{batch_id}/enrollments/{student_id}/withdraw")
def withdraw_student(
    batch_id: int,
    student_id: int,
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    result = services.enrollment.withdraw(student_id, batch_id, scope)
    return _result_payload(result)


@router.get("/{batch_id}/roster")
def batch_roster(
    batch_id: int,
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    view = services.enrollment.roster(batch_id, scope)
    return {
        "batch_id": view.batch_id,
        "active_count": view.active_count,
        "entries": [entry.model_dump(mode="json") for entry in view.entries],
    }


@router.post("/{batch_id}/deduplicate")
def deduplicate_batch(
    batch_id: int,
    scope: TenantScope = Depends(get_scope),
    services: Services = Depends(get_services),
):
    """Repair a roster that picked up duplicate entries for one student."""
    removed = services.enrollment.deduplicate(batch_id, scope)
    return {"batch_id": batch_id, "removed": removed}
