"""Typed failures raised by the engine and mapped to HTTP responses in main.py."""

from typing import Optional


class EngineError(Exception):
    """Base class for every failure the engine reports to a caller."""

    status_code = 400
    code = "engine_error"
    default_message = "Request could not be completed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


# --- Authentication / authorization ---


class Unauthenticated(EngineError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Authentication required"


class ScopeMissing(EngineError):
    status_code = 403
    code = "scope_missing"
    default_message = "Institute context missing"


class Forbidden(EngineError):
    status_code = 403
    code = "forbidden"
    default_message = "Forbidden"


class NotFound(EngineError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class CrossTenant(NotFound):
    """Resource exists but belongs to another institute.

    Deliberately reported exactly like a plain NotFound so callers cannot
    probe other tenants.
    """


# --- Input ---


class ValidationError(EngineError):
    status_code = 422
    code = "validation_error"
    default_message = "Invalid input"


class InvalidType(ValidationError):
    code = "invalid_type"
    default_message = "Unknown proctoring event type"


# --- Eligibility ---


class NotEnrolled(EngineError):
    status_code = 403
    code = "not_enrolled"
    default_message = "You are not enrolled in a batch for this exam"


class OutsideWindow(EngineError):
    status_code = 409
    code = "outside_window"
    default_message = "Exam is not open at this time"


# --- State guards ---


class InvalidState(EngineError):
    status_code = 409
    code = "invalid_state"
    default_message = "Transition not allowed from the current state"


class NotInProgress(InvalidState):
    code = "not_in_progress"
    default_message = "Submission is not in progress"


class AlreadyFinalized(InvalidState):
    code = "already_finalized"
    default_message = "Submission has already been finalized"


class AlreadyGraded(InvalidState):
    code = "already_graded"
    default_message = "Submission has already been graded"


class NotSubmitted(InvalidState):
    code = "not_submitted"
    default_message = "Submission has not been submitted"


class AlreadyReviewed(InvalidState):
    code = "already_reviewed"
    default_message = "Event has already been reviewed"


class AlreadyAttempted(InvalidState):
    code = "already_attempted"
    default_message = "You have already attempted this exam"


class ConcurrentSession(InvalidState):
    code = "concurrent_session"
    default_message = "Exam is already open in another window or device"


class LateEvent(NotInProgress):
    """A proctoring event arrived for a finalized submission.

    The event is still recorded (flagged late); ``event_id`` points at it.
    """

    code = "late_event"
    default_message = "Submission is not in progress; event recorded as late"

    def __init__(self, event_id: int, message: Optional[str] = None):
        super().__init__(message)
        self.event_id = event_id


# --- Storage ---


class ConcurrentModification(EngineError):
    """Optimistic write lost too many races; safe for the caller to retry."""

    status_code = 503
    code = "concurrent_modification"
    default_message = "Resource is busy, please retry"
