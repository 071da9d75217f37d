"""
Tenant scope resolution and capability checks.

Every engine operation receives a TenantScope and must pass its storage
queries through apply_scope / load_in_scope / ensure_in_scope before
touching data. Resolution itself does no data access: the caller hands in
the identity record and, when a request names an institute code, the
institute that code resolved to.
"""
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from sqlmodel import select

from exam_integrity.errors import CrossTenant, Forbidden, NotFound, ScopeMissing, Unauthenticated
from exam_integrity.models import Institute, InstituteStatus, Role, User

logger = logging.getLogger(__name__)


# ============================================================================
# Capability Definitions
# ============================================================================


class Capability:
    """Capability constants carried by a scope."""

    TAKE_EXAM = "exam:take"
    MANAGE_ENROLLMENT = "enrollment:manage"
    MAINTAIN_ROSTER = "enrollment:maintain"
    GRADE = "submission:grade"
    OVERRIDE_GRADE = "submission:override_grade"
    VIEW_EVENTS = "integrity:view"
    REVIEW = "integrity:review"
    CROSS_TENANT_READ = "tenant:cross_read"


_ADMIN_CAPABILITIES = frozenset(
    {
        Capability.MANAGE_ENROLLMENT,
        Capability.MAINTAIN_ROSTER,
        Capability.GRADE,
        Capability.OVERRIDE_GRADE,
        Capability.VIEW_EVENTS,
        Capability.REVIEW,
    }
)

# Role to capabilities mapping; the only place role strings become permissions
ROLE_CAPABILITIES = {
    Role.STUDENT: frozenset({Capability.TAKE_EXAM}),
    Role.ADMIN: _ADMIN_CAPABILITIES,
    Role.SUPER_ADMIN: _ADMIN_CAPABILITIES | {Capability.CROSS_TENANT_READ},
}


# ============================================================================
# Identity & Scope
# ============================================================================


@dataclass(frozen=True)
class Identity:
    """The authenticated identity record a scope is derived from."""

    user_id: int
    role: str
    institute_id: Optional[int] = None
    institute_code: Optional[str] = None
    institute_active: bool = True
    is_active: bool = True

    @classmethod
    def from_user(cls, user: User, institute: Optional[Institute] = None) -> "Identity":
        institute_active = True
        if institute is not None:
            institute_active = (
                institute.is_active
                and institute.deleted_at is None
                and institute.status in (InstituteStatus.ACTIVE, InstituteStatus.TRIAL)
            )
        return cls(
            user_id=user.id,
            role=user.role,
            institute_id=user.institute_id,
            institute_code=institute.code if institute is not None else None,
            institute_active=institute_active,
            is_active=user.is_active and user.deleted_at is None,
        )


@dataclass(frozen=True)
class TenantScope:
    """Resolved institute + privilege context of the current caller."""

    user_id: int
    role: str
    institute_id: Optional[int]
    is_super_admin: bool = False
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    def can(self, capability: str) -> bool:
        return capability in self.capabilities

    @property
    def can_take_exam(self) -> bool:
        return self.can(Capability.TAKE_EXAM)

    @property
    def can_manage_enrollment(self) -> bool:
        return self.can(Capability.MANAGE_ENROLLMENT)

    @property
    def can_grade(self) -> bool:
        return self.can(Capability.GRADE)

    @property
    def can_review(self) -> bool:
        return self.can(Capability.REVIEW)

    @property
    def is_unrestricted(self) -> bool:
        """True when no institute predicate applies (super admin, no code given)."""
        return self.is_super_admin and self.institute_id is None

    def describe(self) -> dict:
        return {
            "user_id": self.user_id,
            "role": self.role,
            "institute_id": self.institute_id,
            "is_super_admin": self.is_super_admin,
            "capabilities": sorted(self.capabilities),
        }


def normalize_code(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


def resolve_scope(
    identity: Optional[Identity],
    institute_code: Optional[str] = None,
    code_institute_id: Optional[int] = None,
) -> TenantScope:
    """Derive the caller's scope from their identity.

    ``institute_code`` is request-supplied and only ever narrows or
    disambiguates; ``code_institute_id`` is the id that code resolved to
    (None when the code matched no institute).

    Raises:
        Unauthenticated: no identity, or the identity is disabled
        ScopeMissing: no institute can be determined for a tenant-bound identity
    """
    if identity is None or not identity.is_active:
        raise Unauthenticated()

    capabilities = ROLE_CAPABILITIES.get(identity.role)
    if capabilities is None:
        logger.warning("Refusing scope for user %s with unknown role %r", identity.user_id, identity.role)
        raise ScopeMissing()

    code = normalize_code(institute_code)

    if identity.role == Role.SUPER_ADMIN:
        institute_id = None
        if code is not None:
            if code_institute_id is None:
                raise ScopeMissing(f"Institute {code} not found")
            institute_id = code_institute_id
        return TenantScope(
            user_id=identity.user_id,
            role=identity.role,
            institute_id=institute_id,
            is_super_admin=True,
            capabilities=capabilities,
        )

    if identity.institute_id is None:
        logger.warning("User %s has no institute; refusing scope", identity.user_id)
        raise ScopeMissing()
    if not identity.institute_active:
        raise ScopeMissing("Institute is not active")
    if code is not None and code != normalize_code(identity.institute_code):
        # A code can never move a tenant-bound identity to another institute
        logger.warning(
            "User %s (institute %s) supplied foreign institute code %s",
            identity.user_id,
            identity.institute_id,
            code,
        )
        raise ScopeMissing()

    return TenantScope(
        user_id=identity.user_id,
        role=identity.role,
        institute_id=identity.institute_id,
        is_super_admin=False,
        capabilities=capabilities,
    )


# ============================================================================
# Query / resource guards
# ============================================================================


def apply_scope(statement, model, scope: Optional[TenantScope]):
    """Intersect a select/update statement with the caller's institute.

    Refuses rather than returning an unscoped statement when the scope has no
    institute and is not a super admin.
    """
    if scope is None:
        raise ScopeMissing()
    if scope.institute_id is None:
        if scope.is_super_admin:
            return statement
        raise ScopeMissing()
    return statement.where(model.institute_id == scope.institute_id)


def ensure_in_scope(resource, scope: Optional[TenantScope], label: str = "Resource"):
    """Return ``resource`` if the caller may see it.

    Absent and soft-deleted resources raise NotFound; a foreign-tenant one is
    logged and raises CrossTenant, which callers see as the same NotFound so
    they cannot enumerate other institutes' data.
    """
    if scope is None:
        raise ScopeMissing()
    if resource is None or getattr(resource, "deleted_at", None) is not None:
        raise NotFound(f"{label} not found")
    if scope.is_unrestricted:
        return resource
    if scope.institute_id is None:
        raise ScopeMissing()

    resource_institute = getattr(resource, "institute_id", None)
    if resource_institute is None or resource_institute != scope.institute_id:
        logger.warning(
            "Access denied: tenant mismatch. User institute: %s, %s institute: %s",
            scope.institute_id,
            label,
            resource_institute,
        )
        raise CrossTenant(f"{label} not found")
    return resource


def load_in_scope(
    session, model, resource_id: int, scope: Optional[TenantScope], label: str = "Resource"
):
    """Fetch a live row by id and check it against the caller's scope.

    The lookup carries no institute predicate; ensure_in_scope compares the
    row's institute so a foreign hit is logged before it is refused.
    """
    if scope is None or (scope.institute_id is None and not scope.is_super_admin):
        raise ScopeMissing()
    row = session.exec(
        select(model).where(model.id == resource_id, model.deleted_at.is_(None))
    ).first()
    return ensure_in_scope(row, scope, label)


def require_capability(scope: Optional[TenantScope], capability: str) -> TenantScope:
    if scope is None:
        raise Unauthenticated()
    if not scope.can(capability):
        raise Forbidden()
    return scope
