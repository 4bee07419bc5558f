import asyncio

import jwt
from fastapi.testclient import TestClient

from conftest import ADMIN_EMAIL, TEACHER_EMAIL, auth_headers
from halaqat.config import Settings
from halaqat.errors import PermissionDeniedError, UnavailableError
from halaqat.server import create_app
from halaqat.store import AUTH_SESSIONS, DAILY_ATTENDANCE, HALAQAT, STUDENTS


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_api_requires_token(client):
    assert client.get("/api/students").status_code == 401
    assert client.get("/api/students", headers={"Authorization": "Bearer not-a-token"}).status_code == 401


def test_login_with_bad_credentials(client):
    response = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": "wrong"})

    assert response.status_code == 401
    assert response.json()["code"] == "invalid-credential"


def test_admin_and_teacher_sessions(client, admin_headers, teacher_headers):
    admin = client.get("/api/auth/me", headers=admin_headers).json()
    teacher = client.get("/api/auth/me", params={"page": "reports"}, headers=teacher_headers).json()

    assert admin["kind"] == "admin"
    assert "reports" in admin["pages"]
    assert teacher["kind"] == "teacher"
    assert teacher["email"] == TEACHER_EMAIL
    assert teacher["page"] == "dashboard"
    assert teacher["page_title"] == "الرئيسية"


def test_unprovisioned_identity_is_signed_out(client, store, identity):
    async def provision():
        async with identity.provisioning() as provisioner:
            await provisioner.create_identity("orphan@quran.system", "secret1")

    asyncio.run(provision())

    response = client.post("/api/auth/login", json={"email": "orphan@quran.system", "password": "secret1"})

    assert response.status_code == 403
    assert response.json()["kind"] == "not-provisioned"
    assert store.docs(AUTH_SESSIONS) == []


def test_email_claim_in_token_cannot_grant_admin(client, teacher_headers):
    token = teacher_headers["Authorization"].split(" ", 1)[1]
    claims = jwt.decode(token, "test-secret", algorithms=["HS256"])
    forged = jwt.encode({**claims, "email": ADMIN_EMAIL}, "test-secret", algorithm="HS256")
    headers = {"Authorization": f"Bearer {forged}"}

    assert client.get("/api/teachers", headers=headers).status_code == 403
    assert client.get("/api/auth/me", headers=headers).json()["kind"] == "teacher"


def test_missing_jwt_secret_refuses_sign_in(store, preferences, tmp_path):
    settings = Settings(admin_email=ADMIN_EMAIL, preferences_path=tmp_path / "preferences.json")
    assert settings.jwt_secret is None

    with TestClient(create_app(store=store, preferences=preferences, settings=settings)) as client:
        response = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": "Admin@123"})

    assert response.status_code == 500
    assert response.json()["detail"] == "JWT secret not configured"


def test_logout_revokes_token(client, admin_headers):
    assert client.post("/api/auth/logout", headers=admin_headers).status_code == 200
    assert client.get("/api/auth/me", headers=admin_headers).status_code == 401


def test_teacher_sees_only_own_rows(client, school, admin_headers, teacher_headers):
    own = client.get("/api/students", headers=teacher_headers).json()
    everyone = client.get("/api/students", headers=admin_headers).json()
    halaqat = client.get("/api/halaqat", headers=teacher_headers).json()

    assert sorted(s["id"] for s in own) == ["s1", "s2"]
    assert len(everyone) == 3
    assert everyone[0]["halaqa_name"]
    assert [h["id"] for h in halaqat] == ["h1"]
    assert halaqat[0]["student_count"] == 2


def test_admin_pages_reject_teachers(client, teacher_headers):
    assert client.get("/api/reports", headers=teacher_headers).status_code == 403
    assert client.get("/api/teachers", headers=teacher_headers).status_code == 403
    response = client.post("/api/students", json={"name": "x", "age": 9, "halaqa_id": "h1"}, headers=teacher_headers)
    assert response.status_code == 403


def test_teacher_submits_attendance_for_own_circle(client, store, school, teacher_headers):
    response = client.post(
        "/api/attendance",
        json={"halaqa_id": "h1", "records": {"s1": "present", "s2": "absent"}},
        headers=teacher_headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["summary"] == {"present": 1, "absent": 1, "late": 0}
    assert body["data"][0]["halaqa_id"] == "h1"
    assert set(body["data"][0]["date"]) == {"seconds", "nanoseconds"}
    assert store.docs(DAILY_ATTENDANCE)[0]["teacher_id"] == school["teacher_id"]

    form = client.get("/api/attendance/form", params={"halaqa_id": "h1"}, headers=teacher_headers).json()
    assert form["loaded_existing"] is True
    assert form["records"] == {"s1": "present", "s2": "absent"}


def test_teacher_cannot_submit_for_other_circle(client, teacher_headers):
    response = client.post(
        "/api/attendance", json={"halaqa_id": "h2", "records": {"s3": "present"}}, headers=teacher_headers
    )

    assert response.status_code == 403


def test_memorization_submission_and_history(client, teacher_headers):
    response = client.post(
        "/api/memorization",
        json={
            "halaqa_id": "h1",
            "records": {
                "s1": {"new_memorization": {"surah": "الملك", "from": 1, "to": 10}, "quality": "good"},
                "s2": {"new_memorization": {"surah": "", "from": "", "to": ""}},
            },
        },
        headers=teacher_headers,
    )
    assert response.status_code == 200
    assert response.json()["logged_students"] == ["s1"]

    history = client.get("/api/students/s1/memorization-history", headers=teacher_headers).json()
    assert len(history) == 1
    assert history[0]["surah"] == "الملك"
    assert set(history[0]["date"]) == {"seconds", "nanoseconds"}


def test_student_form_validation_errors(client, admin_headers):
    response = client.post("/api/students", json={"name": " ", "age": -1, "halaqa_id": "h1"}, headers=admin_headers)

    assert response.status_code == 422
    errors = response.json()["errors"]
    assert errors["name"] == "اسم الطالب مطلوب"
    assert errors["age"] == "العمر يجب أن يكون رقماً موجباً"


def test_admin_creates_student_in_circle(client, store, school, admin_headers):
    response = client.post(
        "/api/students",
        json={"name": "بلال", "age": 8, "halaqa_id": "h2", "father_phone_number": "+966 500000000"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert store.data[STUDENTS][body["id"]]["teacher_id"] == "t2"
    assert len(body["data"]) == 4


def test_circle_reassignment_via_api(client, store, school, admin_headers):
    response = client.put("/api/halaqat/h1", json={"name": "حلقة الفجر", "teacher_id": "t2"}, headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["reassigned_students"] == 2
    assert store.data[STUDENTS]["s1"]["teacher_id"] == "t2"
    assert store.data[HALAQAT]["h1"]["teacher_id"] == "t2"


def test_duplicate_teacher_email(client, school, admin_headers):
    response = client.post(
        "/api/teachers", json={"name": "خالد", "email": TEACHER_EMAIL, "password": "secret1"}, headers=admin_headers
    )

    assert response.status_code == 409
    assert response.json()["code"] == "email-already-in-use"


def test_permission_denied_carries_remediation(client, store, admin_headers):
    store.fail(STUDENTS, "list_all", PermissionDeniedError("not authorized on halaqat_db"))

    response = client.get("/api/students", headers=admin_headers)

    assert response.status_code == 403
    body = response.json()
    assert body["kind"] == "permission-denied"
    assert "createRole" in body["remediation"]


def test_unavailable_store(client, store, admin_headers):
    store.fail(HALAQAT, "list_all", UnavailableError("timed out"))

    response = client.get("/api/dashboard", headers=admin_headers)

    assert response.status_code == 503
    assert response.json()["kind"] == "unavailable"


def test_dashboards(client, school, admin_headers, teacher_headers):
    admin = client.get("/api/dashboard", headers=admin_headers).json()
    teacher = client.get("/api/dashboard", headers=teacher_headers).json()

    assert admin["kind"] == "admin"
    assert admin["total_students"] == 3
    assert admin["attendance_taken"] is False
    assert len(admin["weekly_attendance"]) == 7
    assert admin["weekly_attendance"][0]["chart_value"] == 0
    assert admin["top_students"][0]["student"]["id"] == "s1"
    assert teacher["kind"] == "teacher"
    assert teacher["student_count"] == 2


def test_report_exports(client, school, admin_headers):
    report = client.get("/api/reports", params={"halaqa_id": "h1"}, headers=admin_headers).json()
    pdf = client.get("/api/reports/export", params={"format": "pdf"}, headers=admin_headers)
    excel = client.get("/api/reports/export", params={"format": "excel"}, headers=admin_headers)

    assert report["student_count"] == 2
    assert report["average_memorization"] == 77.5
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content.startswith(b"%PDF")
    assert excel.headers["content-disposition"] == "attachment; filename=halaqat_report.xlsx"


def test_teacher_summary_and_parents(client, school, admin_headers):
    summary = client.get("/api/teachers/t2/summary", headers=admin_headers).json()
    created = client.post(
        "/api/parents", json={"name": "أبو يوسف", "email": "abu.yusuf@example.com"}, headers=admin_headers
    ).json()
    parents = client.get("/api/parents", headers=admin_headers).json()

    assert summary["student_count"] == 1
    assert summary["average_memorization"] == 92
    assert [p["id"] for p in created["data"]] == [created["id"]]
    assert parents[0]["child_count"] == 0


def test_settings_and_profile(client, admin_headers):
    assert client.put("/api/settings", json={"is_dark_mode": True}, headers=admin_headers).json() == {"is_dark_mode": True}

    response = client.put(
        "/api/settings/profile", json={"name": "مدير المدرسة", "email": "principal@quran.system"}, headers=admin_headers
    )
    me = client.get("/api/auth/me", headers=admin_headers).json()

    assert response.status_code == 200
    assert me["is_dark_mode"] is True
    assert (me["name"], me["email"]) == ("مدير المدرسة", "principal@quran.system")


def test_password_change_with_wrong_current_password(client, teacher_headers):
    response = client.post(
        "/api/auth/password",
        json={"current_password": "wrong-pass", "new_password": "newpass1", "confirm_password": "newpass1"},
        headers=teacher_headers,
    )

    assert response.status_code == 400
    assert response.json()["code"] == "wrong-password"


def test_password_change_then_sign_in(client, teacher_headers):
    response = client.post(
        "/api/auth/password",
        json={"current_password": "teacher-pass", "new_password": "newpass1", "confirm_password": "newpass1"},
        headers=teacher_headers,
    )

    assert response.status_code == 200
    auth_headers(client, TEACHER_EMAIL, "newpass1")
