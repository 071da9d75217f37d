"""
Enrollment ledger: the deduplicated roster of students inside a batch.

A batch's roster is one JSON document on the batch row. Every change is a
read -> modify -> compare-and-swap on ``roster_version``, so two concurrent
enrolls of the same student cannot both append: the loser re-reads, finds
the winner's entry and reports it as already active.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from exam_integrity.errors import ConcurrentModification, CrossTenant, NotFound, ValidationError
from exam_integrity.models import Batch, EnrollmentRecord, EnrollmentStatus, Role, User
from exam_integrity.services.audit import record_audit
from exam_integrity.services.tenancy import Capability, TenantScope, load_in_scope, require_capability
from exam_integrity.utils import utcnow

logger = logging.getLogger(__name__)


class EnrollOutcome:
    NEW = "new"
    REACTIVATED = "reactivated"
    ALREADY_ACTIVE = "already_active"
    WITHDRAWN = "withdrawn"
    ALREADY_WITHDRAWN = "already_withdrawn"


@dataclass
class EnrollmentResult:
    batch_id: int
    student_id: int
    outcome: str
    active_count: int


@dataclass
class RosterView:
    batch_id: int
    entries: List[EnrollmentRecord]
    active_count: int


# ============================================================================
# Pure roster helpers
# ============================================================================


def parse_roster(raw: Optional[Iterable[dict]]) -> List[EnrollmentRecord]:
    return [EnrollmentRecord.model_validate(entry) for entry in (raw or [])]


def dump_roster(records: Iterable[EnrollmentRecord]) -> List[dict]:
    return [record.model_dump(mode="json") for record in records]


def active_enrollment_count(records: Iterable[EnrollmentRecord]) -> int:
    """The only sanctioned membership count: active entries, never len(roster)."""
    return sum(1 for record in records if record.status == EnrollmentStatus.ACTIVE)


def find_entry(records: List[EnrollmentRecord], student_id: int) -> Optional[EnrollmentRecord]:
    """Entry for ``student_id``, preferring an active one over stale duplicates."""
    first = None
    for record in records:
        if record.student_id != student_id:
            continue
        if record.status == EnrollmentStatus.ACTIVE:
            return record
        if first is None:
            first = record
    return first


def deduplicate_roster(records: List[EnrollmentRecord]) -> Tuple[List[EnrollmentRecord], int]:
    """Keep one entry per student, in stored order.

    The kept entry is the student's first active entry if any exists,
    otherwise their first entry. Returns (kept_entries, removed_count).
    """
    keep_index = {}
    for index, record in enumerate(records):
        current = keep_index.get(record.student_id)
        if current is None:
            keep_index[record.student_id] = index
        elif (
            records[current].status != EnrollmentStatus.ACTIVE
            and record.status == EnrollmentStatus.ACTIVE
        ):
            keep_index[record.student_id] = index

    kept_positions = set(keep_index.values())
    kept = [record for index, record in enumerate(records) if index in kept_positions]
    return kept, len(records) - len(kept)


def is_actively_enrolled(session: Session, student_id: int, course_id: int, institute_id: int) -> bool:
    """True when the student holds an active entry in any live batch of the course."""
    batches = session.exec(
        select(Batch).where(
            Batch.course_id == course_id,
            Batch.institute_id == institute_id,
            Batch.deleted_at.is_(None),
        )
    ).all()
    for batch in batches:
        entry = find_entry(parse_roster(batch.roster), student_id)
        if entry is not None and entry.status == EnrollmentStatus.ACTIVE:
            return True
    return False


# ============================================================================
# Ledger
# ============================================================================


class EnrollmentLedger:
    """Enroll / withdraw / repair operations over batch rosters."""

    def __init__(
        self,
        engine: Engine,
        clock: Callable = utcnow,
        cas_retries: int = 5,
    ):
        self.engine = engine
        self.clock = clock
        self.cas_retries = max(1, cas_retries)

    # --- loading ---

    def _load_batch(self, session: Session, batch_id: int, scope: TenantScope) -> Batch:
        return load_in_scope(session, Batch, batch_id, scope, "Batch")

    def _load_student(self, session: Session, student_id: int, batch: Batch) -> User:
        student = session.get(User, student_id)
        if student is None or student.deleted_at is not None:
            raise NotFound("Student not found")
        if student.institute_id != batch.institute_id:
            logger.warning(
                "Refusing to enroll student %s of institute %s into batch %s of institute %s",
                student_id,
                student.institute_id,
                batch.id,
                batch.institute_id,
            )
            raise CrossTenant("Student not found")
        if student.role != Role.STUDENT:
            raise ValidationError("Only student accounts can be enrolled")
        return student

    def _compare_and_swap(
        self, session: Session, batch: Batch, records: List[EnrollmentRecord], now
    ) -> bool:
        stmt = (
            update(Batch)
            .where(
                Batch.id == batch.id,
                Batch.institute_id == batch.institute_id,
                Batch.roster_version == batch.roster_version,
                Batch.deleted_at.is_(None),
            )
            .values(
                roster=dump_roster(records),
                roster_version=batch.roster_version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = session.exec(stmt)
        return result.rowcount == 1

    # --- operations ---

    def enroll(
        self,
        student_id: int,
        batch_id: int,
        scope: TenantScope,
        actor_id: Optional[int] = None,
    ) -> EnrollmentResult:
        """Make ``student_id`` an active member of the batch, idempotently.

        New students are appended, inactive/withdrawn entries are reactivated
        in place, and an already active student is reported, not duplicated.
        """
        require_capability(scope, Capability.MANAGE_ENROLLMENT)
        actor_id = actor_id if actor_id is not None else scope.user_id

        for attempt in range(1, self.cas_retries + 1):
            with Session(self.engine) as session:
                batch = self._load_batch(session, batch_id, scope)
                self._load_student(session, student_id, batch)

                records = parse_roster(batch.roster)
                now = self.clock()
                entry = find_entry(records, student_id)

                if entry is not None and entry.status == EnrollmentStatus.ACTIVE:
                    return EnrollmentResult(
                        batch_id=batch.id,
                        student_id=student_id,
                        outcome=EnrollOutcome.ALREADY_ACTIVE,
                        active_count=active_enrollment_count(records),
                    )

                if entry is None:
                    records.append(
                        EnrollmentRecord(
                            student_id=student_id,
                            status=EnrollmentStatus.ACTIVE,
                            enrolled_at=now,
                            updated_at=now,
                        )
                    )
                    outcome = EnrollOutcome.NEW
                else:
                    entry.status = EnrollmentStatus.ACTIVE
                    entry.updated_at = now
                    outcome = EnrollOutcome.REACTIVATED

                if self._compare_and_swap(session, batch, records, now):
                    record_audit(
                        session,
                        institute_id=batch.institute_id,
                        actor_id=actor_id,
                        action="batch.enroll",
                        resource_type="Batch",
                        resource_id=batch.id,
                        details={"student_id": student_id, "outcome": outcome},
                        now=now,
                    )
                    session.commit()
                    logger.info("Student %s enrolled in batch %s (%s)", student_id, batch.id, outcome)
                    return EnrollmentResult(
                        batch_id=batch.id,
                        student_id=student_id,
                        outcome=outcome,
                        active_count=active_enrollment_count(records),
                    )

                session.rollback()
                logger.info(
                    "Roster of batch %s changed concurrently; retrying enroll (%d/%d)",
                    batch_id,
                    attempt,
                    self.cas_retries,
                )

        raise ConcurrentModification()

    def withdraw(
        self,
        student_id: int,
        batch_id: int,
        scope: TenantScope,
        actor_id: Optional[int] = None,
    ) -> EnrollmentResult:
        """Mark the student's membership withdrawn; the entry itself is kept."""
        require_capability(scope, Capability.MANAGE_ENROLLMENT)
        actor_id = actor_id if actor_id is not None else scope.user_id

        for attempt in range(1, self.cas_retries + 1):
            with Session(self.engine) as session:
                batch = self._load_batch(session, batch_id, scope)
                records = parse_roster(batch.roster)
                now = self.clock()

                entries = [record for record in records if record.student_id == student_id]
                if not entries:
                    raise NotFound("Enrollment not found")
                if all(record.status == EnrollmentStatus.WITHDRAWN for record in entries):
                    return EnrollmentResult(
                        batch_id=batch.id,
                        student_id=student_id,
                        outcome=EnrollOutcome.ALREADY_WITHDRAWN,
                        active_count=active_enrollment_count(records),
                    )

                for record in entries:
                    record.status = EnrollmentStatus.WITHDRAWN
                    record.updated_at = now

                if self._compare_and_swap(session, batch, records, now):
                    record_audit(
                        session,
                        institute_id=batch.institute_id,
                        actor_id=actor_id,
                        action="batch.withdraw",
                        resource_type="Batch",
                        resource_id=batch.id,
                        details={"student_id": student_id},
                        now=now,
                    )
                    session.commit()
                    logger.info("Student %s withdrawn from batch %s", student_id, batch.id)
                    return EnrollmentResult(
                        batch_id=batch.id,
                        student_id=student_id,
                        outcome=EnrollOutcome.WITHDRAWN,
                        active_count=active_enrollment_count(records),
                    )

                session.rollback()
                logger.info(
                    "Roster of batch %s changed concurrently; retrying withdraw (%d/%d)",
                    batch_id,
                    attempt,
                    self.cas_retries,
                )

        raise ConcurrentModification()

    def deduplicate(self, batch_id: int, scope: TenantScope, actor_id: Optional[int] = None) -> int:
        """Collapse duplicate roster entries; returns how many were removed.

        Persists only when the roster actually shrank, so running it again
        immediately is a no-op.
        """
        require_capability(scope, Capability.MAINTAIN_ROSTER)
        actor_id = actor_id if actor_id is not None else scope.user_id

        for attempt in range(1, self.cas_retries + 1):
            with Session(self.engine) as session:
                batch = self._load_batch(session, batch_id, scope)
                records = parse_roster(batch.roster)
                kept, removed = deduplicate_roster(records)
                if removed == 0:
                    return 0

                now = self.clock()
                if self._compare_and_swap(session, batch, kept, now):
                    record_audit(
                        session,
                        institute_id=batch.institute_id,
                        actor_id=actor_id,
                        action="batch.deduplicate",
                        resource_type="Batch",
                        resource_id=batch.id,
                        details={"before": len(records), "after": len(kept)},
                        now=now,
                    )
                    session.commit()
                    logger.info(
                        "Fixed batch %s: reduced roster from %d to %d entries",
                        batch.id,
                        len(records),
                        len(kept),
                    )
                    return removed

                session.rollback()
                logger.info(
                    "Roster of batch %s changed concurrently; retrying deduplicate (%d/%d)",
                    batch_id,
                    attempt,
                    self.cas_retries,
                )

        raise ConcurrentModification()

    def roster(self, batch_id: int, scope: TenantScope) -> RosterView:
        require_capability(scope, Capability.MANAGE_ENROLLMENT)
        with Session(self.engine) as session:
            batch = self._load_batch(session, batch_id, scope)
            records = parse_roster(batch.roster)
            return RosterView(
                batch_id=batch.id,
                entries=records,
                active_count=active_enrollment_count(records),
            )

    def active_enrollment_count(self, batch_id: int, scope: TenantScope) -> int:
        return self.roster(batch_id, scope).active_count
