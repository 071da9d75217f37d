"""Tenant scope resolution, capability checks and query guards."""

from types import SimpleNamespace

import pytest
from sqlmodel import select

from exam_integrity.errors import (
    CrossTenant,
    Forbidden,
    NotFound,
    ScopeMissing,
    Unauthenticated,
)
from exam_integrity.models import Exam, Role
from exam_integrity.services.tenancy import (
    ROLE_CAPABILITIES,
    Capability,
    Identity,
    TenantScope,
    apply_scope,
    ensure_in_scope,
    load_in_scope,
    require_capability,
    resolve_scope,
)


def _identity(**overrides):
    values = dict(
        user_id=7,
        role=Role.ADMIN,
        institute_id=3,
        institute_code="NFA",
        institute_active=True,
        is_active=True,
    )
    values.update(overrides)
    return Identity(**values)


class TestResolveScope:
    def test_missing_identity_is_unauthenticated(self):
        with pytest.raises(Unauthenticated):
            resolve_scope(None)

    def test_disabled_identity_is_unauthenticated(self):
        with pytest.raises(Unauthenticated):
            resolve_scope(_identity(is_active=False))

    def test_admin_scope_comes_from_identity(self):
        scope = resolve_scope(_identity())
        assert scope.institute_id == 3
        assert not scope.is_super_admin
        assert scope.can_manage_enrollment
        assert scope.can_grade
        assert scope.can_review
        assert not scope.can_take_exam

    def test_student_only_takes_exams(self):
        scope = resolve_scope(_identity(role=Role.STUDENT))
        assert scope.capabilities == frozenset({Capability.TAKE_EXAM})
        assert scope.can_take_exam
        assert not scope.can_grade

    def test_own_code_is_accepted_case_insensitively(self):
        scope = resolve_scope(_identity(), institute_code=" nfa ")
        assert scope.institute_id == 3

    def test_foreign_code_never_moves_a_tenant_bound_identity(self):
        with pytest.raises(ScopeMissing):
            resolve_scope(_identity(), institute_code="SGC", code_institute_id=9)

    def test_identity_without_institute_is_refused(self):
        with pytest.raises(ScopeMissing):
            resolve_scope(_identity(institute_id=None, institute_code=None))

    def test_inactive_institute_is_refused(self):
        with pytest.raises(ScopeMissing):
            resolve_scope(_identity(institute_active=False))

    def test_unknown_role_is_refused(self):
        with pytest.raises(ScopeMissing):
            resolve_scope(_identity(role="lecturer"))

    def test_super_admin_without_code_is_unrestricted(self):
        scope = resolve_scope(_identity(role=Role.SUPER_ADMIN, institute_id=None, institute_code=None))
        assert scope.is_super_admin
        assert scope.is_unrestricted
        assert scope.can(Capability.CROSS_TENANT_READ)

    def test_super_admin_code_narrows_scope(self):
        scope = resolve_scope(
            _identity(role=Role.SUPER_ADMIN, institute_id=None, institute_code=None),
            institute_code="sgc",
            code_institute_id=9,
        )
        assert scope.institute_id == 9
        assert not scope.is_unrestricted

    def test_super_admin_unknown_code_is_refused(self):
        with pytest.raises(ScopeMissing):
            resolve_scope(
                _identity(role=Role.SUPER_ADMIN, institute_id=None, institute_code=None),
                institute_code="NOPE",
                code_institute_id=None,
            )

    def test_every_role_has_a_capability_set(self):
        assert set(ROLE_CAPABILITIES) == set(Role.ALL)


class TestQueryGuards:
    def test_apply_scope_adds_institute_predicate(self):
        scope = TenantScope(user_id=1, role=Role.ADMIN, institute_id=3)
        statement = apply_scope(select(Exam), Exam, scope)
        assert "exam.institute_id" in str(statement)

    def test_apply_scope_leaves_super_admin_unrestricted(self):
        scope = TenantScope(user_id=1, role=Role.SUPER_ADMIN, institute_id=None, is_super_admin=True)
        statement = apply_scope(select(Exam), Exam, scope)
        assert "WHERE" not in str(statement)

    def test_apply_scope_refuses_rather_than_running_unscoped(self):
        scope = TenantScope(user_id=1, role=Role.ADMIN, institute_id=None)
        with pytest.raises(ScopeMissing):
            apply_scope(select(Exam), Exam, scope)

    def test_foreign_resource_looks_missing(self):
        scope = TenantScope(user_id=1, role=Role.ADMIN, institute_id=3)
        resource = SimpleNamespace(institute_id=4, deleted_at=None)
        with pytest.raises(CrossTenant) as exc_info:
            ensure_in_scope(resource, scope, "Batch")
        assert isinstance(exc_info.value, NotFound)
        assert exc_info.value.message == "Batch not found"
        assert exc_info.value.code == NotFound.code

    def test_soft_deleted_resource_is_not_found(self):
        scope = TenantScope(user_id=1, role=Role.ADMIN, institute_id=3)
        resource = SimpleNamespace(institute_id=3, deleted_at="2030-01-01")
        with pytest.raises(NotFound):
            ensure_in_scope(resource, scope, "Exam")

    def test_own_resource_is_returned(self):
        scope = TenantScope(user_id=1, role=Role.ADMIN, institute_id=3)
        resource = SimpleNamespace(institute_id=3, deleted_at=None)
        assert ensure_in_scope(resource, scope) is resource

    def test_missing_capability_is_forbidden(self):
        scope = resolve_scope(_identity(role=Role.STUDENT))
        with pytest.raises(Forbidden):
            require_capability(scope, Capability.REVIEW)
        assert require_capability(scope, Capability.TAKE_EXAM) is scope


class TestScopeFromDatabase:
    def test_identity_from_stored_user(self, admin, institute):
        identity = Identity.from_user(admin, institute)
        assert identity.institute_id == institute.id
        assert identity.institute_code == "NFA"
        assert identity.institute_active

    def test_suspended_institute_is_inactive(self, admin, institute):
        institute.status = "suspended"
        identity = Identity.from_user(admin, institute)
        assert not identity.institute_active
        with pytest.raises(ScopeMissing):
            resolve_scope(identity)

    def test_load_in_scope_returns_own_row(self, session, exam, admin_scope):
        assert load_in_scope(session, Exam, exam.id, admin_scope, "Exam").id == exam.id

    def test_load_in_scope_reports_foreign_row_as_cross_tenant(self, session, exam, foreign_admin_scope):
        with pytest.raises(CrossTenant):
            load_in_scope(session, Exam, exam.id, foreign_admin_scope, "Exam")

    def test_load_in_scope_missing_row(self, session, admin_scope):
        with pytest.raises(NotFound) as excinfo:
            load_in_scope(session, Exam, 424242, admin_scope, "Exam")
        assert not isinstance(excinfo.value, CrossTenant)

    def test_load_in_scope_refuses_scope_without_institute(self, session):
        scope = TenantScope(user_id=1, role=Role.ADMIN, institute_id=None)
        with pytest.raises(ScopeMissing):
            load_in_scope(session, Exam, 424242, scope, "Exam")
