"""SQLModel models for the Exam Session & Integrity Engine."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from exam_integrity.utils import utcnow

SCHEMA_VERSION = 1


# ===================== STATUS VOCABULARIES =====================


class Role:
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    STUDENT = "student"

    ALL = (SUPER_ADMIN, ADMIN, STUDENT)


class InstituteStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    TRIAL = "trial"


class EnrollmentStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"
    WITHDRAWN = "withdrawn"

    ALL = (ACTIVE, INACTIVE, WITHDRAWN)


class ExamStatus:
    DRAFT = "draft"
    PUBLISHED = "published"
    COMPLETED = "completed"


class QuestionType:
    MCQ = "mcq"
    TRUE_FALSE = "true_false"
    DESCRIPTIVE = "descriptive"

    OBJECTIVE = (MCQ, TRUE_FALSE)


class SubmissionStatus:
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    GRADED = "graded"
    INVALIDATED = "invalidated"

    FINAL = (SUBMITTED, GRADED, INVALIDATED)


class Severity:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    ORDERED = (LOW, MEDIUM, HIGH, CRITICAL)

    @classmethod
    def rank(cls, severity: str) -> int:
        return cls.ORDERED.index(severity)


class EventType:
    TAB_SWITCH = "tab_switch"
    FULLSCREEN_EXIT = "fullscreen_exit"
    COPY_ATTEMPT = "copy_attempt"
    PASTE_ATTEMPT = "paste_attempt"
    RIGHT_CLICK = "right_click"
    CONTEXT_MENU = "context_menu"
    DEV_TOOLS_OPEN = "dev_tools_open"
    MULTIPLE_SESSIONS = "multiple_sessions"
    KEYBOARD_SHORTCUT = "keyboard_shortcut"
    FOCUS_LOSS = "focus_loss"

    ALL = (
        TAB_SWITCH,
        FULLSCREEN_EXIT,
        COPY_ATTEMPT,
        PASTE_ATTEMPT,
        RIGHT_CLICK,
        CONTEXT_MENU,
        DEV_TOOLS_OPEN,
        MULTIPLE_SESSIONS,
        KEYBOARD_SHORTCUT,
        FOCUS_LOSS,
    )


class ReviewAction:
    NONE = "none"
    WARNING_ISSUED = "warning_issued"
    MARKS_DEDUCTED = "marks_deducted"
    EXAM_INVALIDATED = "exam_invalidated"

    ALL = (NONE, WARNING_ISSUED, MARKS_DEDUCTED, EXAM_INVALIDATED)


# ===================== TENANCY =====================


class Institute(SQLModel, table=True):
    """A tenant. Every other record belongs to exactly one institute."""

    __table_args__ = (UniqueConstraint("code", name="uq_institute_code"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    code: str = Field(index=True)  # stored upper-case
    status: str = Field(default=InstituteStatus.ACTIVE)
    is_active: bool = Field(default=True)
    # Per-institute event_type -> severity tuning layered over the global policy
    severity_overrides: Dict[str, str] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )
    created_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


class User(SQLModel, table=True):
    """Application user (super_admin / admin / student)."""

    __table_args__ = (
        UniqueConstraint("institute_id", "email", name="uq_user_institute_email"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    # Only super admins may lack an institute
    institute_id: Optional[int] = Field(default=None, foreign_key="institute.id", index=True)
    name: str
    email: str = Field(index=True)
    password_hash: str
    role: str = Field(default=Role.STUDENT, index=True)
    is_active: bool = Field(default=True)
    last_login: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


# ===================== COURSES & BATCHES =====================


class Course(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("institute_id", "code", name="uq_course_institute_code"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    institute_id: int = Field(foreign_key="institute.id", index=True)
    code: str
    name: str
    created_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


class EnrollmentRecord(SQLModel):
    """One roster entry embedded in Batch.roster (not a table)."""

    student_id: int
    status: str = EnrollmentStatus.ACTIVE
    enrolled_at: datetime
    updated_at: Optional[datetime] = None


class Batch(SQLModel, table=True):
    """A cohort of students taking a course.

    The roster is stored inline and only ever rewritten as a whole through a
    compare-and-swap on roster_version (see services.enrollment).
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    institute_id: int = Field(foreign_key="institute.id", index=True)
    course_id: int = Field(foreign_key="course.id", index=True)
    name: str
    capacity: int = Field(default=30)
    roster: List[Dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    roster_version: int = Field(default=0)
    schema_version: int = Field(default=SCHEMA_VERSION)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


# ===================== EXAMS =====================


class Exam(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    institute_id: int = Field(foreign_key="institute.id", index=True)
    course_id: int = Field(foreign_key="course.id", index=True)
    title: str
    duration_minutes: int
    schedule_start: datetime
    schedule_end: datetime
    status: str = Field(default=ExamStatus.DRAFT)
    negative_marking_percentage: float = Field(default=0)  # 0-100
    created_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


class Question(SQLModel, table=True):
    """A question on an exam. Objective questions form the answer key."""

    id: Optional[int] = Field(default=None, primary_key=True)
    institute_id: int = Field(foreign_key="institute.id", index=True)
    exam_id: int = Field(foreign_key="exam.id", index=True)
    text: str
    question_type: str = Field(default=QuestionType.MCQ)
    options: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    # For MCQ the index of the correct option as a string ("0", "1", ...);
    # for true/false "true" or "false"
    correct_answer: Optional[str] = None
    marks: float = Field(default=1)


# ===================== ATTEMPTS & INTEGRITY =====================


class Submission(SQLModel, table=True):
    """One student's attempt at one exam. Never physically deleted."""

    __table_args__ = (
        UniqueConstraint("exam_id", "student_id", name="uq_submission_exam_student"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    institute_id: int = Field(foreign_key="institute.id", index=True)
    exam_id: int = Field(foreign_key="exam.id", index=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    status: str = Field(default=SubmissionStatus.IN_PROGRESS, index=True)

    answers: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    draft_answers: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )

    started_at: datetime = Field(default_factory=utcnow)
    last_autosave_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    graded_at: Optional[datetime] = None
    invalidated_at: Optional[datetime] = None

    score: Optional[float] = None
    max_score: Optional[float] = None
    overtime: bool = Field(default=False)

    # Client context captured at start
    session_fingerprint: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None

    schema_version: int = Field(default=SCHEMA_VERSION)
    deleted_at: Optional[datetime] = None


class ProctoringEvent(SQLModel, table=True):
    """Append-only proctoring signal. Only the review fields ever change."""

    __table_args__ = (
        Index("ix_event_submission_timestamp", "submission_id", "timestamp"),
        Index("ix_event_exam_severity", "exam_id", "severity"),
        Index("ix_event_student_reviewed", "student_id", "reviewed"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    institute_id: int = Field(foreign_key="institute.id", index=True)
    submission_id: int = Field(foreign_key="submission.id")
    student_id: int = Field(foreign_key="user.id")
    exam_id: int = Field(foreign_key="exam.id")

    event_type: str
    severity: str
    timestamp: datetime = Field(default_factory=utcnow)
    time_from_start: Optional[float] = None  # seconds since the attempt started
    question_id: Optional[str] = None
    event_metadata: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )
    late: bool = Field(default=False)  # arrived after the attempt was finalized

    reviewed: bool = Field(default=False)
    reviewed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    action_taken: Optional[str] = None

    deleted_at: Optional[datetime] = None


class AuditLog(SQLModel, table=True):
    """Who changed what, written in the same transaction as the change."""

    id: Optional[int] = Field(default=None, primary_key=True)
    institute_id: int = Field(foreign_key="institute.id", index=True)
    actor_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    action: str = Field(index=True)  # e.g. "batch.enroll", "submission.grade"
    resource_type: str
    resource_id: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
