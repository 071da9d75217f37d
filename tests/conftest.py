import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlmodel import Session, SQLModel, create_engine, select, text


def _ensure_app_on_path():
    repo_root = Path(__file__).resolve().parent.parent
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))
    return repo_root


_ensure_app_on_path()

# ============================================================================
# IN-MEMORY DATABASE FOR TESTING
# ============================================================================

from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from exam_integrity.auth_utils import hash_password
from exam_integrity.config import Settings
from exam_integrity.models import (
    Batch,
    Course,
    Exam,
    ExamStatus,
    Institute,
    Question,
    QuestionType,
    Role,
    User,
)
from exam_integrity.services import build_services
from exam_integrity.services.tenancy import Identity, resolve_scope

# Use sqlite:///:memory: with poolclass=StaticPool to share the same in-memory DB across threads
test_engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

PASSWORD = "testpass123"
# bcrypt is deliberately slow; hash once for every fixture user
PASSWORD_HASH = hash_password(PASSWORD)

EXAM_DAY = datetime(2030, 5, 14, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0) -> datetime:
    """A time on the exam day; the fixture exam runs 09:00-11:00."""
    return EXAM_DAY.replace(hour=hour, minute=minute)


class FakeClock:
    """Injectable clock so tests control server receipt times."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session", autouse=True)
def setup_test_db():
    """Create all tables in the test database once per session."""
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(autouse=True)
def cleanup_db_between_tests():
    """Clean up test data after each test."""
    yield

    # Clean up in FK-safe order
    with Session(test_engine) as session:
        session.exec(text("DELETE FROM auditlog"))
        session.exec(text("DELETE FROM proctoringevent"))
        session.exec(text("DELETE FROM submission"))
        session.exec(text("DELETE FROM question"))
        session.exec(text("DELETE FROM exam"))
        session.exec(text("DELETE FROM batch"))
        session.exec(text("DELETE FROM course"))
        session.exec(text("DELETE FROM user"))
        session.exec(text("DELETE FROM institute"))
        session.commit()


@pytest.fixture
def engine():
    return test_engine


@pytest.fixture
def session():
    """Provide a database session for tests."""
    with Session(test_engine) as session:
        yield session


# ============================================================================
# ENGINE WIRING
# ============================================================================


@pytest.fixture
def clock():
    return FakeClock(at(9, 10))


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        SESSION_SECRET="test-session-secret",
        LOG_LEVEL="WARNING",
        SEVERITY_POLICY_FILE=None,
    )


@pytest.fixture
def services(settings, clock):
    return build_services(test_engine, settings, clock=clock)


def persist(obj):
    """Insert ``obj`` and return it loaded and detached."""
    with Session(test_engine) as session:
        session.add(obj)
        session.commit()
        session.refresh(obj)
    return obj


def scope_for(user: User, institute_code=None):
    """Resolve a scope the same way the request dependency does."""
    with Session(test_engine) as session:
        institute = session.get(Institute, user.institute_id) if user.institute_id else None
        code_institute_id = None
        if institute_code is not None:
            match = session.exec(
                select(Institute).where(Institute.code == institute_code.upper())
            ).first()
            code_institute_id = match.id if match else None
    return resolve_scope(
        Identity.from_user(user, institute),
        institute_code=institute_code,
        code_institute_id=code_institute_id,
    )


# ============================================================================
# ENTITY FIXTURES
# ============================================================================


def make_user(institute, name, email, role=Role.STUDENT):
    return persist(
        User(
            institute_id=institute.id if institute is not None else None,
            name=name,
            email=email,
            password_hash=PASSWORD_HASH,
            role=role,
        )
    )


@pytest.fixture
def institute():
    return persist(Institute(name="Northfield Academy", code="NFA"))


@pytest.fixture
def other_institute():
    return persist(Institute(name="Southgate College", code="SGC"))


@pytest.fixture
def admin(institute):
    return make_user(institute, "Nora Admin", "admin@nfa.example", Role.ADMIN)


@pytest.fixture
def student(institute):
    return make_user(institute, "Alice Student", "alice@nfa.example")


@pytest.fixture
def other_student(institute):
    return make_user(institute, "Bob Student", "bob@nfa.example")


@pytest.fixture
def foreign_admin(other_institute):
    return make_user(other_institute, "Sam Admin", "admin@sgc.example", Role.ADMIN)


@pytest.fixture
def foreign_student(other_institute):
    return make_user(other_institute, "Carol Student", "carol@sgc.example")


@pytest.fixture
def super_admin():
    return make_user(None, "Root", "root@platform.example", Role.SUPER_ADMIN)


@pytest.fixture
def course(institute):
    return persist(Course(institute_id=institute.id, code="MTH101", name="Calculus I"))


@pytest.fixture
def batch(institute, course, student):
    """Morning batch with ``student`` actively enrolled."""
    return persist(
        Batch(
            institute_id=institute.id,
            course_id=course.id,
            name="Morning batch",
            roster=[
                {
                    "student_id": student.id,
                    "status": "active",
                    "enrolled_at": "2030-05-01T08:00:00Z",
                }
            ],
        )
    )


@pytest.fixture
def exam(institute, course, batch):
    """Published 60 minute exam open 09:00-11:00."""
    return persist(
        Exam(
            institute_id=institute.id,
            course_id=course.id,
            title="Midterm",
            duration_minutes=60,
            schedule_start=at(9, 0),
            schedule_end=at(11, 0),
            status=ExamStatus.PUBLISHED,
        )
    )


@pytest.fixture
def questions(institute, exam):
    """An MCQ worth 2, a true/false worth 1 and a descriptive worth 5."""
    return [
        persist(
            Question(
                institute_id=institute.id,
                exam_id=exam.id,
                text="d/dx x^2 at x=1?",
                question_type=QuestionType.MCQ,
                options=["1", "2", "3"],
                correct_answer="1",
                marks=2,
            )
        ),
        persist(
            Question(
                institute_id=institute.id,
                exam_id=exam.id,
                text="Every differentiable function is continuous.",
                question_type=QuestionType.TRUE_FALSE,
                options=["true", "false"],
                correct_answer="true",
                marks=1,
            )
        ),
        persist(
            Question(
                institute_id=institute.id,
                exam_id=exam.id,
                text="Explain the chain rule.",
                question_type=QuestionType.DESCRIPTIVE,
                marks=5,
            )
        ),
    ]


@pytest.fixture
def foreign_course(other_institute):
    return persist(Course(institute_id=other_institute.id, code="BIO101", name="Biology"))


@pytest.fixture
def foreign_batch(other_institute, foreign_course, foreign_student):
    return persist(
        Batch(
            institute_id=other_institute.id,
            course_id=foreign_course.id,
            name="Evening batch",
            roster=[
                {
                    "student_id": foreign_student.id,
                    "status": "active",
                    "enrolled_at": "2030-05-01T08:00:00Z",
                }
            ],
        )
    )


@pytest.fixture
def foreign_exam(other_institute, foreign_course, foreign_batch):
    return persist(
        Exam(
            institute_id=other_institute.id,
            course_id=foreign_course.id,
            title="Cells",
            duration_minutes=30,
            schedule_start=at(9, 0),
            schedule_end=at(11, 0),
            status=ExamStatus.PUBLISHED,
        )
    )


@pytest.fixture
def student_scope(student):
    return scope_for(student)


@pytest.fixture
def other_student_scope(other_student):
    return scope_for(other_student)


@pytest.fixture
def admin_scope(admin):
    return scope_for(admin)


@pytest.fixture
def foreign_admin_scope(foreign_admin):
    return scope_for(foreign_admin)


@pytest.fixture
def foreign_student_scope(foreign_student):
    return scope_for(foreign_student)


# ============================================================================
# FASTAPI APP & TEST CLIENT
# ============================================================================


@pytest.fixture
def app(settings, clock):
    from exam_integrity.main import create_app

    return create_app(settings, engine=test_engine, clock=clock)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def client_for(app):
    """Factory returning a TestClient already logged in as ``user``."""

    def _login(user: User, institute_code=None):
        client = TestClient(app)
        data = {"email": user.email, "password": PASSWORD}
        if institute_code is not None:
            data["institute_code"] = institute_code
        response = client.post("/auth/login", data=data)
        assert response.status_code == 200, response.text
        return client

    return _login
