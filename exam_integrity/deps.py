"""Shared FastAPI dependencies for database access, authentication and scope."""

from typing import Optional

from fastapi import Depends, Header, Request
from sqlmodel import Session, select

from exam_integrity.database import get_session
from exam_integrity.errors import Unauthenticated
from exam_integrity.models import Institute, Role, User
from exam_integrity.services import Services
from exam_integrity.services.tenancy import (
    Identity,
    TenantScope,
    normalize_code,
    resolve_scope,
)


def get_services(request: Request) -> Services:
    """Engine components built at startup (see main.create_app)."""
    return request.app.state.services


def get_current_user(
    request: Request, session: Session = Depends(get_session)
) -> Optional[User]:
    """Return the currently logged-in user based on the session cookie, if any."""
    user_id = request.session.get("user_id")
    if not user_id:
        return None

    user = session.get(User, user_id)
    if not user or not user.is_active or user.deleted_at is not None:
        # Clear any stale session
        request.session.clear()
        return None
    return user


def get_scope(
    current_user: Optional[User] = Depends(get_current_user),
    session: Session = Depends(get_session),
    institute_code: Optional[str] = Header(default=None, alias="X-Institute-Code"),
) -> TenantScope:
    """Resolve the caller's tenant scope; every engine route depends on this."""
    if current_user is None:
        raise Unauthenticated()

    institute = None
    if current_user.institute_id is not None:
        institute = session.get(Institute, current_user.institute_id)

    code_institute_id = None
    code = normalize_code(institute_code)
    if code is not None and current_user.role == Role.SUPER_ADMIN:
        match = session.exec(
            select(Institute).where(Institute.code == code, Institute.deleted_at.is_(None))
        ).first()
        code_institute_id = match.id if match else None

    return resolve_scope(
        Identity.from_user(current_user, institute),
        institute_code=code,
        code_institute_id=code_institute_id,
    )
