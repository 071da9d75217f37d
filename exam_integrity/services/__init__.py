"""Engine components, wired once at process start."""

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from exam_integrity.config import Settings
from exam_integrity.services.enrollment import EnrollmentLedger
from exam_integrity.services.integrity import IntegrityMonitor, SeverityPolicy
from exam_integrity.services.review import ReviewWorkflow
from exam_integrity.services.submissions import SubmissionService
from exam_integrity.utils import utcnow


@dataclass
class Services:
    enrollment: EnrollmentLedger
    submissions: SubmissionService
    integrity: IntegrityMonitor
    review: ReviewWorkflow


def build_services(
    engine: Engine,
    settings: Settings,
    clock: Callable = utcnow,
    policy: Optional[SeverityPolicy] = None,
) -> Services:
    policy = policy or SeverityPolicy.from_settings(settings)
    integrity = IntegrityMonitor(engine, policy, clock=clock)
    return Services(
        enrollment=EnrollmentLedger(engine, clock=clock, cas_retries=settings.ENROLLMENT_CAS_RETRIES),
        submissions=SubmissionService(
            engine,
            integrity=integrity,
            clock=clock,
            grace_minutes=settings.SUBMISSION_GRACE_MINUTES,
            auto_grade_on_submit=settings.AUTO_GRADE_ON_SUBMIT,
        ),
        integrity=integrity,
        review=ReviewWorkflow(
            engine,
            clock=clock,
            invalidation_min_severity=settings.INVALIDATION_MIN_SEVERITY,
        ),
    )
