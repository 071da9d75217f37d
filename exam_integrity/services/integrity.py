"""
Integrity monitor.

Ingests proctoring signals for an attempt, classifies them with a fixed
type -> severity policy table and serves the review-dashboard queries.

The policy table ships with defaults, can be replaced per deployment through
a JSON file (SEVERITY_POLICY_FILE) and tuned per institute through
``Institute.severity_overrides``:

    {
        "severities": {"tab_switch": "high"},
        "weights": {"tab_switch": 2}
    }
"""
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from exam_integrity.errors import InvalidType, LateEvent, NotFound, ValidationError
from exam_integrity.models import (
    EventType,
    Exam,
    Institute,
    ProctoringEvent,
    Severity,
    Submission,
    SubmissionStatus,
    User,
)
from exam_integrity.services.tenancy import (
    Capability,
    TenantScope,
    apply_scope,
    load_in_scope,
    require_capability,
)
from exam_integrity.utils import utcnow

logger = logging.getLogger(__name__)


DEFAULT_SEVERITIES = {
    EventType.TAB_SWITCH: Severity.MEDIUM,
    EventType.FULLSCREEN_EXIT: Severity.HIGH,
    EventType.COPY_ATTEMPT: Severity.MEDIUM,
    EventType.PASTE_ATTEMPT: Severity.MEDIUM,
    EventType.RIGHT_CLICK: Severity.LOW,
    EventType.CONTEXT_MENU: Severity.LOW,
    EventType.DEV_TOOLS_OPEN: Severity.HIGH,
    EventType.MULTIPLE_SESSIONS: Severity.CRITICAL,
    EventType.KEYBOARD_SHORTCUT: Severity.LOW,
    EventType.FOCUS_LOSS: Severity.LOW,
}

# Lower total = better integrity
DEFAULT_WEIGHTS = {
    EventType.TAB_SWITCH: 1,
    EventType.FULLSCREEN_EXIT: 2,
    EventType.COPY_ATTEMPT: 3,
    EventType.PASTE_ATTEMPT: 3,
    EventType.RIGHT_CLICK: 1,
    EventType.DEV_TOOLS_OPEN: 5,
    EventType.MULTIPLE_SESSIONS: 10,
}
DEFAULT_WEIGHT = 1


def rate_integrity(score: float) -> str:
    if score == 0:
        return "excellent"
    if score < 5:
        return "good"
    if score < 10:
        return "suspicious"
    return "highly_suspicious"


class SeverityPolicy:
    """Event type -> severity table plus the integrity score weights."""

    def __init__(
        self,
        severities: Optional[Dict[str, str]] = None,
        weights: Optional[Dict[str, float]] = None,
    ):
        merged = dict(DEFAULT_SEVERITIES)
        merged.update(self._check_severities(severities or {}))
        self.severities = merged

        merged_weights = dict(DEFAULT_WEIGHTS)
        for event_type, weight in (weights or {}).items():
            if event_type not in EventType.ALL:
                raise ValueError(f"Unknown event type in weights: {event_type}")
            merged_weights[event_type] = float(weight)
        self.weights = merged_weights

    @staticmethod
    def _check_severities(table: Dict[str, str]) -> Dict[str, str]:
        for event_type, severity in table.items():
            if event_type not in EventType.ALL:
                raise ValueError(f"Unknown event type in severity policy: {event_type}")
            if severity not in Severity.ORDERED:
                raise ValueError(f"Unknown severity {severity!r} for {event_type}")
        return dict(table)

    @classmethod
    def from_file(cls, path: str) -> "SeverityPolicy":
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
        logger.info("Loaded severity policy from %s", path)
        return cls(severities=data.get("severities"), weights=data.get("weights"))

    @classmethod
    def from_settings(cls, settings) -> "SeverityPolicy":
        if settings.SEVERITY_POLICY_FILE:
            return cls.from_file(settings.SEVERITY_POLICY_FILE)
        return cls()

    def severity_for(self, event_type: str, overrides: Optional[Dict[str, str]] = None) -> str:
        """Severity for ``event_type``; depends on nothing but the type and policy."""
        if event_type not in EventType.ALL:
            raise InvalidType(f"Unknown proctoring event type: {event_type}")
        if overrides:
            override = overrides.get(event_type)
            if override in Severity.ORDERED:
                return override
            if override is not None:
                logger.warning("Ignoring invalid severity override %r for %s", override, event_type)
        return self.severities[event_type]

    def weight_for(self, event_type: str) -> float:
        return self.weights.get(event_type, DEFAULT_WEIGHT)


@dataclass
class RecordedEvent:
    event_id: int
    submission_id: int
    event_type: str
    severity: str
    late: bool
    timestamp: object


@dataclass
class IntegritySummary:
    submission_id: int
    score: float
    rating: str
    event_count: int
    unreviewed_count: int
    highest_severity: Optional[str]
    by_type: Dict[str, int] = field(default_factory=dict)


class IntegrityMonitor:
    def __init__(self, engine: Engine, policy: SeverityPolicy, clock: Callable = utcnow):
        self.engine = engine
        self.policy = policy
        self.clock = clock

    def _load_submission(self, session: Session, submission_id: int, scope: TenantScope) -> Submission:
        return load_in_scope(session, Submission, submission_id, scope, "Submission")

    def _overrides(self, session: Session, institute_id: int) -> Dict[str, str]:
        institute = session.get(Institute, institute_id)
        if institute is None:
            return {}
        return institute.severity_overrides or {}

    # ------------------------------------------------------------------
    # ingestion
    # ------------------------------------------------------------------

    def record_event(
        self,
        submission_id: int,
        event_type: str,
        scope: TenantScope,
        question_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        client_timestamp: Optional[str] = None,
    ) -> RecordedEvent:
        """Append one proctoring signal to the caller's attempt.

        Events for an attempt that is no longer in progress are still stored,
        flagged ``late``, and reported to the caller as LateEvent.
        """
        require_capability(scope, Capability.TAKE_EXAM)

        with Session(self.engine) as session:
            submission = self._load_submission(session, submission_id, scope)
            if submission.student_id != scope.user_id:
                raise NotFound("Submission not found")

            severity = self.policy.severity_for(
                event_type, self._overrides(session, submission.institute_id)
            )
            if metadata is not None and not isinstance(metadata, dict):
                raise ValidationError("Event metadata must be an object")
            details = dict(metadata or {})
            if client_timestamp:
                # Client clocks are untrusted; kept for reviewers only
                details["client_timestamp"] = str(client_timestamp)

            now = self.clock()
            late = submission.status != SubmissionStatus.IN_PROGRESS
            event = ProctoringEvent(
                institute_id=submission.institute_id,
                submission_id=submission.id,
                student_id=submission.student_id,
                exam_id=submission.exam_id,
                event_type=event_type,
                severity=severity,
                timestamp=now,
                time_from_start=round((now - submission.started_at).total_seconds(), 3),
                question_id=str(question_id) if question_id is not None else None,
                event_metadata=details,
                late=late,
            )
            session.add(event)
            session.commit()
            session.refresh(event)

            if late:
                logger.warning(
                    "Late %s event %s for submission %s in state %s",
                    event_type,
                    event.id,
                    submission.id,
                    submission.status,
                )
                raise LateEvent(event.id)

            logger.info(
                "Recorded %s event %s (%s) for submission %s",
                event_type,
                event.id,
                severity,
                submission.id,
            )
            return RecordedEvent(
                event_id=event.id,
                submission_id=submission.id,
                event_type=event_type,
                severity=severity,
                late=False,
                timestamp=now,
            )

    # ------------------------------------------------------------------
    # review dashboard queries
    # ------------------------------------------------------------------

    def events_for_submission(self, submission_id: int, scope: TenantScope) -> List[ProctoringEvent]:
        require_capability(scope, Capability.VIEW_EVENTS)
        with Session(self.engine) as session:
            submission = self._load_submission(session, submission_id, scope)
            stmt = apply_scope(
                select(ProctoringEvent).where(
                    ProctoringEvent.submission_id == submission.id,
                    ProctoringEvent.deleted_at.is_(None),
                ),
                ProctoringEvent,
                scope,
            ).order_by(ProctoringEvent.timestamp, ProctoringEvent.id)
            return list(session.exec(stmt).all())

    def unreviewed_by_severity(self, exam_id: int, scope: TenantScope) -> Dict[str, List[ProctoringEvent]]:
        """Unreviewed events for an exam, grouped critical-first."""
        require_capability(scope, Capability.VIEW_EVENTS)
        with Session(self.engine) as session:
            exam = load_in_scope(session, Exam, exam_id, scope, "Exam")

            stmt = apply_scope(
                select(ProctoringEvent).where(
                    ProctoringEvent.exam_id == exam.id,
                    ProctoringEvent.reviewed == False,  # noqa: E712
                    ProctoringEvent.deleted_at.is_(None),
                ),
                ProctoringEvent,
                scope,
            ).order_by(ProctoringEvent.timestamp, ProctoringEvent.id)

            grouped = {severity: [] for severity in reversed(Severity.ORDERED)}
            for event in session.exec(stmt).all():
                grouped[event.severity].append(event)
            return grouped

    def unreviewed_for_student(self, student_id: int, scope: TenantScope) -> List[ProctoringEvent]:
        require_capability(scope, Capability.VIEW_EVENTS)
        with Session(self.engine) as session:
            student = load_in_scope(session, User, student_id, scope, "Student")

            stmt = apply_scope(
                select(ProctoringEvent).where(
                    ProctoringEvent.student_id == student.id,
                    ProctoringEvent.reviewed == False,  # noqa: E712
                    ProctoringEvent.deleted_at.is_(None),
                ),
                ProctoringEvent,
                scope,
            ).order_by(ProctoringEvent.timestamp, ProctoringEvent.id)
            return list(session.exec(stmt).all())

    def integrity_summary(self, submission_id: int, scope: TenantScope) -> IntegritySummary:
        events = self.events_for_submission(submission_id, scope)
        score = sum(self.policy.weight_for(event.event_type) for event in events)
        highest = None
        for event in events:
            if highest is None or Severity.rank(event.severity) > Severity.rank(highest):
                highest = event.severity
        return IntegritySummary(
            submission_id=submission_id,
            score=score,
            rating=rate_integrity(score),
            event_count=len(events),
            unreviewed_count=sum(1 for event in events if not event.reviewed),
            highest_severity=highest,
            by_type=dict(Counter(event.event_type for event in events)),
        )
