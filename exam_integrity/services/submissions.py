"""
Submission state machine.

    not_started -> in_progress -> submitted -> graded
                   in_progress / submitted -> invalidated   (review workflow only)

Each transition is one conditional UPDATE whose WHERE clause carries the
state guard, so two racing requests can never both pass the guard: the
loser's statement matches zero rows and is reported from the re-read state.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from exam_integrity.errors import (
    AlreadyAttempted,
    AlreadyFinalized,
    AlreadyGraded,
    ConcurrentSession,
    Forbidden,
    InvalidState,
    NotEnrolled,
    NotFound,
    NotInProgress,
    NotSubmitted,
    OutsideWindow,
    ValidationError,
)
from exam_integrity.models import (
    EventType,
    Exam,
    ExamStatus,
    Question,
    Submission,
    SubmissionStatus,
)
from exam_integrity.services.audit import record_audit
from exam_integrity.services.enrollment import is_actively_enrolled
from exam_integrity.services.grading import GradeResult, compute_score
from exam_integrity.services.tenancy import (
    Capability,
    TenantScope,
    apply_scope,
    load_in_scope,
    require_capability,
)
from exam_integrity.utils import utcnow

logger = logging.getLogger(__name__)

MAX_ANSWER_LENGTH = 20000


@dataclass
class StartResult:
    submission: Submission
    resumed: bool


@dataclass
class AutosaveResult:
    submission_id: int
    saved_at: Any
    applied: bool


@dataclass
class GradeOutcome:
    submission_id: int
    score: float
    max_score: float
    percentage: float
    ungraded_questions: int


@dataclass
class SubmitResult:
    submission_id: int
    submitted_at: Any
    overtime: bool
    # Set when the attempt was graded straight after submit
    grade: Optional[GradeOutcome] = None


def validate_answers(answers) -> Dict[str, Any]:
    """Check an answer map: question id (str) -> scalar answer."""
    if not isinstance(answers, dict):
        raise ValidationError("Answers must be an object keyed by question id")
    cleaned = {}
    for key, value in answers.items():
        key = str(key).strip()
        if not key:
            raise ValidationError("Answer keys must be non-empty question ids")
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise ValidationError(f"Answer for question {key} must be a scalar value")
        if isinstance(value, str) and len(value) > MAX_ANSWER_LENGTH:
            raise ValidationError(f"Answer for question {key} is too long")
        cleaned[key] = value
    return cleaned


def mark_invalidated(session: Session, submission: Submission, now) -> bool:
    """Freeze an in-progress or submitted attempt as invalidated.

    Stages the conditional update on ``session``; the caller commits. Returns
    False when the submission had already left the invalidatable states.
    """
    stmt = (
        update(Submission)
        .where(
            Submission.id == submission.id,
            Submission.institute_id == submission.institute_id,
            Submission.status.in_([SubmissionStatus.IN_PROGRESS, SubmissionStatus.SUBMITTED]),
            Submission.deleted_at.is_(None),
        )
        .values(status=SubmissionStatus.INVALIDATED, invalidated_at=now)
        .execution_options(synchronize_session=False)
    )
    return session.exec(stmt).rowcount == 1


class SubmissionService:
    """Lifecycle of one exam attempt per (student, exam) pair."""

    def __init__(
        self,
        engine: Engine,
        integrity=None,
        clock: Callable = utcnow,
        grace_minutes: int = 2,
        auto_grade_on_submit: bool = False,
    ):
        self.engine = engine
        self.integrity = integrity
        self.clock = clock
        self.grace_minutes = grace_minutes
        self.auto_grade_on_submit = auto_grade_on_submit

    # ------------------------------------------------------------------
    # loading helpers
    # ------------------------------------------------------------------

    def _load_exam(self, session: Session, exam_id: int, scope: TenantScope) -> Exam:
        return load_in_scope(session, Exam, exam_id, scope, "Exam")

    def _load_submission(self, session: Session, submission_id: int, scope: TenantScope) -> Submission:
        return load_in_scope(session, Submission, submission_id, scope, "Submission")

    def _load_own_submission(self, session: Session, submission_id: int, scope: TenantScope) -> Submission:
        submission = self._load_submission(session, submission_id, scope)
        if submission.student_id != scope.user_id:
            # Same answer as a missing record: no cross-student enumeration
            raise NotFound("Submission not found")
        return submission

    def _find_attempt(self, session: Session, exam: Exam, student_id: int) -> Optional[Submission]:
        return session.exec(
            select(Submission).where(
                Submission.exam_id == exam.id,
                Submission.student_id == student_id,
                Submission.institute_id == exam.institute_id,
                Submission.deleted_at.is_(None),
            )
        ).first()

    def _reload(self, session: Session, submission_id: int) -> Submission:
        session.expire_all()
        return session.get(Submission, submission_id)

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    def start_attempt(
        self,
        exam_id: int,
        scope: TenantScope,
        session_fingerprint: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> StartResult:
        """Open (or resume) the caller's attempt at ``exam_id``."""
        require_capability(scope, Capability.TAKE_EXAM)
        student_id = scope.user_id

        with Session(self.engine) as session:
            exam = self._load_exam(session, exam_id, scope)
            if exam.status != ExamStatus.PUBLISHED:
                # Drafts are invisible to students
                raise NotFound("Exam not found")

            if not is_actively_enrolled(session, student_id, exam.course_id, exam.institute_id):
                raise NotEnrolled()

            now = self.clock()
            if now < exam.schedule_start:
                minutes = int((exam.schedule_start - now).total_seconds() // 60) + 1
                raise OutsideWindow(f"Exam will start in {minutes} minutes")
            if now > exam.schedule_end:
                raise OutsideWindow("Exam has ended")

            existing = self._find_attempt(session, exam, student_id)
            if existing is not None:
                return self._resume(session, existing, scope, session_fingerprint)

            submission = Submission(
                institute_id=exam.institute_id,
                exam_id=exam.id,
                student_id=student_id,
                status=SubmissionStatus.IN_PROGRESS,
                answers={},
                draft_answers={},
                started_at=now,
                session_fingerprint=session_fingerprint,
                client_ip=client_ip,
                user_agent=user_agent,
            )
            session.add(submission)
            try:
                session.commit()
            except IntegrityError:
                # A concurrent start for the same pair won the unique constraint
                session.rollback()
                existing = self._find_attempt(session, exam, student_id)
                if existing is None:
                    raise
                return self._resume(session, existing, scope, session_fingerprint)

            session.refresh(submission)
            logger.info(
                "Student %s started exam %s (submission %s)", student_id, exam.id, submission.id
            )
            return StartResult(submission=submission, resumed=False)

    def _bind_fingerprint(
        self, session: Session, existing: Submission, session_fingerprint: str
    ) -> bool:
        """Claim an unbound attempt for ``session_fingerprint``.

        Returns False when another session bound it first.
        """
        stmt = (
            update(Submission)
            .where(
                Submission.id == existing.id,
                Submission.institute_id == existing.institute_id,
                Submission.status == SubmissionStatus.IN_PROGRESS,
                Submission.session_fingerprint.is_(None),
                Submission.deleted_at.is_(None),
            )
            .values(session_fingerprint=session_fingerprint)
            .execution_options(synchronize_session=False)
        )
        if session.exec(stmt).rowcount == 1:
            session.commit()
            session.refresh(existing)
            return True
        session.rollback()
        return False

    def _resume(
        self,
        session: Session,
        existing: Submission,
        scope: TenantScope,
        session_fingerprint: Optional[str],
    ) -> StartResult:
        if existing.status != SubmissionStatus.IN_PROGRESS:
            raise AlreadyAttempted()

        if session_fingerprint and existing.session_fingerprint is None:
            if self._bind_fingerprint(session, existing, session_fingerprint):
                logger.info("Submission %s bound to session %s", existing.id, session_fingerprint)
            else:
                existing = self._reload(session, existing.id)
                if existing is None or existing.status != SubmissionStatus.IN_PROGRESS:
                    raise AlreadyAttempted()

        if (
            session_fingerprint
            and existing.session_fingerprint
            and session_fingerprint != existing.session_fingerprint
        ):
            if self.integrity is not None:
                self.integrity.record_event(
                    existing.id,
                    EventType.MULTIPLE_SESSIONS,
                    scope,
                    metadata={
                        "new_session_id": session_fingerprint,
                        "existing_session_id": existing.session_fingerprint,
                    },
                )
            logger.warning(
                "Submission %s reopened from a second session by student %s",
                existing.id,
                scope.user_id,
            )
            raise ConcurrentSession()

        logger.info("Student %s resumed submission %s", scope.user_id, existing.id)
        return StartResult(submission=existing, resumed=True)

    # ------------------------------------------------------------------
    # autosave
    # ------------------------------------------------------------------

    def autosave(self, submission_id: int, draft_answers, scope: TenantScope) -> AutosaveResult:
        """Replace the whole draft; last write by server receipt time wins."""
        require_capability(scope, Capability.TAKE_EXAM)
        received_at = self.clock()

        with Session(self.engine) as session:
            submission = self._load_own_submission(session, submission_id, scope)
            if submission.status != SubmissionStatus.IN_PROGRESS:
                raise NotInProgress()
            draft = validate_answers(draft_answers)

            stmt = (
                update(Submission)
                .where(
                    Submission.id == submission.id,
                    Submission.student_id == scope.user_id,
                    Submission.institute_id == submission.institute_id,
                    Submission.status == SubmissionStatus.IN_PROGRESS,
                    Submission.deleted_at.is_(None),
                    or_(
                        Submission.last_autosave_at.is_(None),
                        Submission.last_autosave_at <= received_at,
                    ),
                )
                .values(draft_answers=draft, last_autosave_at=received_at)
                .execution_options(synchronize_session=False)
            )
            if session.exec(stmt).rowcount == 1:
                session.commit()
                return AutosaveResult(submission_id=submission.id, saved_at=received_at, applied=True)

            session.rollback()
            current = self._reload(session, submission.id)
            if current is None or current.status != SubmissionStatus.IN_PROGRESS:
                raise NotInProgress()
            # A later-received save already landed; this one is superseded
            logger.info(
                "Discarded stale autosave for submission %s received at %s (stored %s)",
                submission.id,
                received_at,
                current.last_autosave_at,
            )
            return AutosaveResult(
                submission_id=submission.id, saved_at=current.last_autosave_at, applied=False
            )

    # ------------------------------------------------------------------
    # submit
    # ------------------------------------------------------------------

    def submit_attempt(
        self,
        submission_id: int,
        scope: TenantScope,
        final_answers: Optional[dict] = None,
    ) -> SubmitResult:
        """Finalize the attempt, committing either ``final_answers`` or the draft."""
        require_capability(scope, Capability.TAKE_EXAM)

        with Session(self.engine) as session:
            submission = self._load_own_submission(session, submission_id, scope)
            if submission.status in SubmissionStatus.FINAL:
                raise AlreadyFinalized()
            if submission.status != SubmissionStatus.IN_PROGRESS:
                raise NotInProgress()

            answers = validate_answers(final_answers) if final_answers is not None else None

            now = self.clock()
            exam = session.get(Exam, submission.exam_id)
            allowed = timedelta(minutes=(exam.duration_minutes if exam else 0) + self.grace_minutes)
            overtime = exam is not None and (now - submission.started_at) > allowed

            values = {
                "status": SubmissionStatus.SUBMITTED,
                "submitted_at": now,
                "overtime": overtime,
                # Copy the draft inside the same statement so a racing autosave
                # cannot slip between read and write
                "answers": answers if answers is not None else Submission.draft_answers,
            }
            stmt = (
                update(Submission)
                .where(
                    Submission.id == submission.id,
                    Submission.student_id == scope.user_id,
                    Submission.institute_id == submission.institute_id,
                    Submission.status == SubmissionStatus.IN_PROGRESS,
                    Submission.deleted_at.is_(None),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if session.exec(stmt).rowcount != 1:
                session.rollback()
                current = self._reload(session, submission.id)
                if current is not None and current.status in SubmissionStatus.FINAL:
                    raise AlreadyFinalized()
                raise NotInProgress()

            session.commit()
            if overtime:
                logger.warning(
                    "Submission %s submitted after the allowed %s", submission.id, allowed
                )
            logger.info("Submission %s submitted", submission.id)
            result = SubmitResult(submission_id=submission.id, submitted_at=now, overtime=overtime)
            if self.auto_grade_on_submit:
                result.grade = self._auto_grade(session, submission.id)
            return result

    def _auto_grade(self, session: Session, submission_id: int) -> Optional[GradeOutcome]:
        """Grade a just-submitted attempt with the system as actor."""
        submission = self._reload(session, submission_id)
        try:
            return self._grade(session, submission, actor_id=None)
        except InvalidState as exc:
            # A grader or reviewer moved the attempt first; the submit stands
            logger.info("Auto-grade skipped for submission %s: %s", submission_id, exc.message)
            return None

    # ------------------------------------------------------------------
    # grading
    # ------------------------------------------------------------------

    def _score(self, session: Session, submission: Submission) -> GradeResult:
        exam = session.exec(
            select(Exam).where(
                Exam.id == submission.exam_id,
                Exam.institute_id == submission.institute_id,
            )
        ).first()
        if exam is None:
            raise NotFound("Exam not found")
        questions = session.exec(
            select(Question).where(
                Question.exam_id == exam.id,
                Question.institute_id == exam.institute_id,
            )
        ).all()
        return compute_score(submission.answers or {}, questions, exam.negative_marking_percentage)

    def grade_attempt(self, submission_id: int, scope: TenantScope) -> GradeOutcome:
        """Score a submitted attempt once; the result is then immutable."""
        require_capability(scope, Capability.GRADE)

        with Session(self.engine) as session:
            submission = self._load_submission(session, submission_id, scope)
            return self._grade(session, submission, actor_id=scope.user_id)

    def _grade(self, session: Session, submission: Submission, actor_id: Optional[int]) -> GradeOutcome:
        if submission.status == SubmissionStatus.GRADED:
            raise AlreadyGraded()
        if submission.status != SubmissionStatus.SUBMITTED:
            raise NotSubmitted()

        result = self._score(session, submission)
        now = self.clock()
        stmt = (
            update(Submission)
            .where(
                Submission.id == submission.id,
                Submission.institute_id == submission.institute_id,
                Submission.status == SubmissionStatus.SUBMITTED,
                Submission.deleted_at.is_(None),
            )
            .values(
                status=SubmissionStatus.GRADED,
                score=result.score,
                max_score=result.max_score,
                graded_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if session.exec(stmt).rowcount != 1:
            session.rollback()
            current = self._reload(session, submission.id)
            if current is not None and current.status == SubmissionStatus.GRADED:
                raise AlreadyGraded()
            raise NotSubmitted()

        record_audit(
            session,
            institute_id=submission.institute_id,
            actor_id=actor_id,
            action="submission.grade",
            resource_type="Submission",
            resource_id=submission.id,
            details={
                "score": result.score,
                "max_score": result.max_score,
                "ungraded_questions": result.ungraded_questions,
                "automatic": actor_id is None,
            },
            now=now,
        )
        session.commit()
        logger.info(
            "Submission %s graded: %s/%s", submission.id, result.score, result.max_score
        )
        return GradeOutcome(
            submission_id=submission.id,
            score=result.score,
            max_score=result.max_score,
            percentage=result.percentage,
            ungraded_questions=result.ungraded_questions,
        )

    def regrade_attempt(self, submission_id: int, scope: TenantScope, reason: str) -> GradeOutcome:
        """Administrative override: recompute the score of a graded attempt."""
        require_capability(scope, Capability.OVERRIDE_GRADE)

        with Session(self.engine) as session:
            submission = self._load_submission(session, submission_id, scope)
            if submission.status != SubmissionStatus.GRADED:
                raise NotSubmitted("Only graded submissions can be regraded")
            reason = (reason or "").strip()
            if not reason:
                raise ValidationError("A reason is required to override a grade")

            previous_score = submission.score
            result = self._score(session, submission)
            now = self.clock()
            stmt = (
                update(Submission)
                .where(
                    Submission.id == submission.id,
                    Submission.institute_id == submission.institute_id,
                    Submission.status == SubmissionStatus.GRADED,
                    Submission.deleted_at.is_(None),
                )
                .values(score=result.score, max_score=result.max_score, graded_at=now)
                .execution_options(synchronize_session=False)
            )
            if session.exec(stmt).rowcount != 1:
                session.rollback()
                raise NotSubmitted("Only graded submissions can be regraded")

            record_audit(
                session,
                institute_id=submission.institute_id,
                actor_id=scope.user_id,
                action="submission.regrade",
                resource_type="Submission",
                resource_id=submission.id,
                details={
                    "previous_score": previous_score,
                    "score": result.score,
                    "max_score": result.max_score,
                    "reason": reason,
                },
                now=now,
            )
            session.commit()
            logger.info(
                "Submission %s regraded by %s: %s -> %s",
                submission.id,
                scope.user_id,
                previous_score,
                result.score,
            )
            return GradeOutcome(
                submission_id=submission.id,
                score=result.score,
                max_score=result.max_score,
                percentage=result.percentage,
                ungraded_questions=result.ungraded_questions,
            )

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_submission(self, submission_id: int, scope: TenantScope) -> Submission:
        with Session(self.engine) as session:
            if scope.can(Capability.TAKE_EXAM):
                return self._load_own_submission(session, submission_id, scope)
            if scope.can(Capability.GRADE) or scope.can(Capability.VIEW_EVENTS):
                return self._load_submission(session, submission_id, scope)
            raise Forbidden()

    def list_for_exam(self, exam_id: int, scope: TenantScope) -> List[Submission]:
        """Every live attempt at ``exam_id`` for the reviewer dashboard, highest score first."""
        if not (scope.can(Capability.GRADE) or scope.can(Capability.VIEW_EVENTS)):
            raise Forbidden()
        with Session(self.engine) as session:
            exam = self._load_exam(session, exam_id, scope)
            stmt = apply_scope(
                select(Submission).where(
                    Submission.exam_id == exam.id,
                    Submission.deleted_at.is_(None),
                ),
                Submission,
                scope,
            ).order_by(
                # Ungraded attempts sort after every scored one
                Submission.score.is_(None),
                Submission.score.desc(),
                Submission.submitted_at,
                Submission.id,
            )
            return list(session.exec(stmt).all())
