"""Authentication routes: login with institute code, logout, and scope lookup."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from sqlmodel import Session, select

from exam_integrity.auth_utils import dummy_verify, verify_password
from exam_integrity.database import get_session
from exam_integrity.deps import get_scope
from exam_integrity.errors import EngineError, NotFound, Unauthenticated
from exam_integrity.models import Institute, InstituteStatus, Role, User
from exam_integrity.services.tenancy import Identity, TenantScope, normalize_code, resolve_scope
from exam_integrity.utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()
public_router = APIRouter()


def _institute_by_code(session: Session, code: Optional[str]) -> Optional[Institute]:
    if code is None:
        return None
    return session.exec(
        select(Institute).where(Institute.code == code, Institute.deleted_at.is_(None))
    ).first()


def _find_login_candidate(
    session: Session, email: str, code_institute: Optional[Institute]
) -> Optional[User]:
    """Pick the account an (email, institute code) pair refers to.

    Emails are unique per institute, so with a code the institute's account
    wins; super admins (no institute) can sign in with or without a code.
    """
    candidates = session.exec(
        select(User).where(User.email == email, User.deleted_at.is_(None))
    ).all()

    if code_institute is not None:
        for user in candidates:
            if user.institute_id == code_institute.id:
                return user

    for user in candidates:
        if user.role == Role.SUPER_ADMIN:
            return user
    return None


@router.post("/login")
def login(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    institute_code: Optional[str] = Form(None),
    session: Session = Depends(get_session),
):
    """Authenticate and store the user id in the signed session cookie.

    Every refusal (unknown email, bad password, wrong or inactive institute)
    is the same 401 so the endpoint cannot be used to probe accounts.
    """
    email = email.strip().lower()
    code = normalize_code(institute_code)
    code_institute = _institute_by_code(session, code)

    user = _find_login_candidate(session, email, code_institute)
    if user is None:
        dummy_verify()
        raise Unauthenticated("Invalid credentials")

    if not verify_password(password, user.password_hash):
        raise Unauthenticated("Invalid credentials")

    # Tenant-bound accounts must name their institute
    if code is None and user.role != Role.SUPER_ADMIN:
        raise Unauthenticated("Invalid credentials")

    institute = session.get(Institute, user.institute_id) if user.institute_id else None
    try:
        scope = resolve_scope(
            Identity.from_user(user, institute),
            institute_code=code,
            code_institute_id=code_institute.id if code_institute else None,
        )
    except EngineError as exc:
        logger.info("Login refused for user %s: %s", user.id, exc.message)
        raise Unauthenticated("Invalid credentials") from exc

    user.last_login = utcnow()
    session.add(user)
    session.commit()

    request.session.clear()
    request.session["user_id"] = user.id
    logger.info("User %s signed in (institute %s)", user.id, scope.institute_id)
    return {"status": "success", "scope": scope.describe()}


@router.post("/logout")
def logout(request: Request):
    request.session.clear()
    return {"status": "success"}


@router.get("/me")
def me(scope: TenantScope = Depends(get_scope)):
    return scope.describe()


@public_router.get("/institutes/{code}")
def public_institute(code: str, session: Session = Depends(get_session)):
    """Public "find my institute" lookup; unknown and inactive look the same."""
    institute = _institute_by_code(session, normalize_code(code))
    if (
        institute is None
        or not institute.is_active
        or institute.status not in (InstituteStatus.ACTIVE, InstituteStatus.TRIAL)
    ):
        raise NotFound("Institute not found")
    return {"name": institute.name, "code": institute.code, "status": institute.status}
