"""Review workflow: a privileged reviewer disposes of a proctoring event."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from exam_integrity.errors import AlreadyReviewed, InvalidState, NotFound, ValidationError
from exam_integrity.models import ProctoringEvent, ReviewAction, Severity, Submission
from exam_integrity.services.audit import record_audit
from exam_integrity.services.submissions import mark_invalidated
from exam_integrity.services.tenancy import (
    Capability,
    TenantScope,
    load_in_scope,
    require_capability,
)
from exam_integrity.utils import sanitize_notes, utcnow

logger = logging.getLogger(__name__)

# Accepted shorthand for dispositions
ACTION_ALIASES = {
    "invalidate": ReviewAction.EXAM_INVALIDATED,
    "warn": ReviewAction.WARNING_ISSUED,
    "deduct": ReviewAction.MARKS_DEDUCTED,
    "dismiss": ReviewAction.NONE,
}


@dataclass
class ReviewResult:
    event: ProctoringEvent
    submission_status: str


def normalize_action(action: Optional[str]) -> str:
    action = (action or "").strip().lower()
    action = ACTION_ALIASES.get(action, action)
    if action not in ReviewAction.ALL:
        raise ValidationError(f"Unknown review action: {action or '<empty>'}")
    return action


class ReviewWorkflow:
    def __init__(
        self,
        engine: Engine,
        clock: Callable = utcnow,
        invalidation_min_severity: str = Severity.CRITICAL,
    ):
        if invalidation_min_severity not in Severity.ORDERED:
            raise ValueError(f"Unknown severity {invalidation_min_severity!r}")
        self.engine = engine
        self.clock = clock
        self.invalidation_min_severity = invalidation_min_severity

    def review_event(
        self,
        event_id: int,
        scope: TenantScope,
        action: str,
        notes: Optional[str] = None,
    ) -> ReviewResult:
        """Mark an event reviewed and apply the disposition.

        An ``exam_invalidated`` disposition also freezes the submission; the
        review and the invalidation commit together or not at all.
        """
        require_capability(scope, Capability.REVIEW)

        with Session(self.engine) as session:
            event = load_in_scope(session, ProctoringEvent, event_id, scope, "Event")
            if event.reviewed:
                raise AlreadyReviewed()

            action = normalize_action(action)
            notes = sanitize_notes(notes)
            invalidate = action == ReviewAction.EXAM_INVALIDATED
            if invalidate and Severity.rank(event.severity) < Severity.rank(self.invalidation_min_severity):
                raise InvalidState(
                    f"Only {self.invalidation_min_severity} findings can invalidate an attempt"
                )

            now = self.clock()
            review_stmt = (
                update(ProctoringEvent)
                .where(
                    ProctoringEvent.id == event.id,
                    ProctoringEvent.institute_id == event.institute_id,
                    ProctoringEvent.reviewed == False,  # noqa: E712
                )
                .values(
                    reviewed=True,
                    reviewed_by=scope.user_id,
                    reviewed_at=now,
                    review_notes=notes,
                    action_taken=action,
                )
                .execution_options(synchronize_session=False)
            )
            if session.exec(review_stmt).rowcount != 1:
                session.rollback()
                raise AlreadyReviewed()

            submission = session.exec(
                select(Submission).where(
                    Submission.id == event.submission_id,
                    Submission.institute_id == event.institute_id,
                )
            ).first()
            if submission is None:
                session.rollback()
                raise NotFound("Submission not found")

            if invalidate and not mark_invalidated(session, submission, now):
                session.rollback()
                raise InvalidState(
                    f"Submission is {submission.status}; it can no longer be invalidated"
                )

            record_audit(
                session,
                institute_id=event.institute_id,
                actor_id=scope.user_id,
                action="event.review",
                resource_type="ProctoringEvent",
                resource_id=event.id,
                details={"action": action, "severity": event.severity},
                now=now,
            )
            if invalidate:
                record_audit(
                    session,
                    institute_id=submission.institute_id,
                    actor_id=scope.user_id,
                    action="submission.invalidate",
                    resource_type="Submission",
                    resource_id=submission.id,
                    details={"event_id": event.id, "previous_status": submission.status},
                    now=now,
                )
            session.commit()

            session.refresh(event)
            session.refresh(submission)
            if invalidate:
                logger.warning(
                    "Submission %s invalidated by %s after event %s",
                    submission.id,
                    scope.user_id,
                    event.id,
                )
            logger.info("Event %s reviewed by %s: %s", event.id, scope.user_id, action)
            return ReviewResult(event=event, submission_status=submission.status)
