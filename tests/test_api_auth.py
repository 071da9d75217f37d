"""Login, session cookie, scope lookup and the public institute endpoint."""

from sqlmodel import Session

from exam_integrity.models import Institute, User

from conftest import PASSWORD, test_engine


class TestLogin:
    def test_student_logs_in_with_institute_code(self, client, student, institute):
        response = client.post(
            "/auth/login",
            data={"email": "Alice@NFA.example", "password": PASSWORD, "institute_code": "nfa"},
        )
        assert response.status_code == 200
        scope = response.json()["scope"]
        assert scope["user_id"] == student.id
        assert scope["institute_id"] == institute.id
        assert scope["capabilities"] == ["exam:take"]

        me = client.get("/auth/me")
        assert me.status_code == 200
        assert me.json()["role"] == "student"

        with Session(test_engine) as session:
            assert session.get(User, student.id).last_login is not None

    def test_wrong_password(self, client, student):
        response = client.post(
            "/auth/login",
            data={"email": student.email, "password": "nope", "institute_code": "NFA"},
        )
        assert response.status_code == 401
        assert response.json() == {"detail": "Invalid credentials", "code": "unauthenticated"}

    def test_unknown_email_looks_like_wrong_password(self, client, institute):
        response = client.post(
            "/auth/login",
            data={"email": "ghost@nfa.example", "password": PASSWORD, "institute_code": "NFA"},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"

    def test_tenant_user_must_name_institute(self, client, student):
        response = client.post("/auth/login", data={"email": student.email, "password": PASSWORD})
        assert response.status_code == 401

    def test_foreign_code_is_refused(self, client, student, other_institute):
        response = client.post(
            "/auth/login",
            data={"email": student.email, "password": PASSWORD, "institute_code": "SGC"},
        )
        assert response.status_code == 401

    def test_suspended_institute_is_refused(self, client, student, institute):
        with Session(test_engine) as session:
            stored = session.get(Institute, institute.id)
            stored.status = "suspended"
            session.add(stored)
            session.commit()
        response = client.post(
            "/auth/login",
            data={"email": student.email, "password": PASSWORD, "institute_code": "NFA"},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"

    def test_super_admin_without_code(self, client, super_admin):
        response = client.post("/auth/login", data={"email": super_admin.email, "password": PASSWORD})
        assert response.status_code == 200
        assert response.json()["scope"]["is_super_admin"] is True
        assert response.json()["scope"]["institute_id"] is None

    def test_logout_clears_session(self, client_for, student):
        client = client_for(student, "NFA")
        assert client.post("/auth/logout").status_code == 200
        response = client.get("/auth/me")
        assert response.status_code == 401


class TestScopeHeader:
    def test_anonymous_request_is_unauthenticated(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["code"] == "unauthenticated"

    def test_foreign_code_header_is_refused(self, client_for, admin, other_institute):
        client = client_for(admin, "NFA")
        response = client.get("/auth/me", headers={"X-Institute-Code": "SGC"})
        assert response.status_code == 403
        assert response.json()["code"] == "scope_missing"

    def test_super_admin_narrows_with_header(self, client_for, super_admin, other_institute):
        client = client_for(super_admin)
        response = client.get("/auth/me", headers={"X-Institute-Code": "sgc"})
        assert response.status_code == 200
        assert response.json()["institute_id"] == other_institute.id

    def test_super_admin_unknown_code(self, client_for, super_admin):
        client = client_for(super_admin)
        response = client.get("/auth/me", headers={"X-Institute-Code": "NOPE"})
        assert response.status_code == 403

    def test_deactivated_user_loses_session(self, client_for, student):
        client = client_for(student, "NFA")
        with Session(test_engine) as session:
            stored = session.get(User, student.id)
            stored.is_active = False
            session.add(stored)
            session.commit()
        assert client.get("/auth/me").status_code == 401


class TestPublicInstituteLookup:
    def test_active_institute(self, client, institute):
        response = client.get("/public/institutes/nfa")
        assert response.status_code == 200
        assert response.json() == {"name": "Northfield Academy", "code": "NFA", "status": "active"}

    def test_unknown_and_inactive_look_the_same(self, client, institute):
        with Session(test_engine) as session:
            stored = session.get(Institute, institute.id)
            stored.is_active = False
            session.add(stored)
            session.commit()

        inactive = client.get("/public/institutes/NFA")
        unknown = client.get("/public/institutes/ZZZ")
        assert inactive.status_code == unknown.status_code == 404
        assert inactive.json() == unknown.json()
