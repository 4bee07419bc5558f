import asyncio
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fakes import FakeRecordStore
from halaqat.config import Settings
from halaqat.identity import IdentityProvider
from halaqat.preferences import LocalPreferences
from halaqat.server import create_app
from halaqat.store import HALAQAT, STUDENTS, TEACHERS

ADMIN_EMAIL = "admin123@quran.system"
ADMIN_PASSWORD = "Admin@123"
TEACHER_EMAIL = "khalid@quran.system"
TEACHER_PASSWORD = "teacher-pass"


@pytest.fixture
def store():
    return FakeRecordStore()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="test-secret",
        admin_email=ADMIN_EMAIL,
        admin_password=ADMIN_PASSWORD,
        preferences_path=tmp_path / "preferences.json",
    )


@pytest.fixture
def identity(store, settings):
    return IdentityProvider(store, settings.jwt_secret, settings.token_expire_minutes)


@pytest.fixture
def preferences(settings):
    return LocalPreferences(settings.preferences_path)


@pytest.fixture
def school(store, identity):
    """Two teachers, two circles and three students; ``t1`` can sign in."""
    async def provision():
        async with identity.provisioning() as provisioner:
            return await provisioner.create_identity(TEACHER_EMAIL, TEACHER_PASSWORD)

    teacher = asyncio.run(provision())
    store.seed(TEACHERS, teacher.uid, name="خالد", email=TEACHER_EMAIL)
    store.seed(TEACHERS, "t2", name="سعيد", email="saeed@quran.system")
    store.seed(HALAQAT, "h1", name="حلقة الفجر", teacher_id=teacher.uid, student_count=99)
    store.seed(HALAQAT, "h2", name="حلقة العصر", teacher_id="t2")
    store.seed(STUDENTS, "s1", name="أحمد", age=10, halaqa_id="h1", teacher_id=teacher.uid,
               memorization_progress=95, attendance_rate=98)
    store.seed(STUDENTS, "s2", name="عمر", age=11, halaqa_id="h1", teacher_id=teacher.uid,
               memorization_progress=60, attendance_rate=80)
    store.seed(STUDENTS, "s3", name="يوسف", age=12, halaqa_id="h2", teacher_id="t2",
               memorization_progress=92, attendance_rate=99)
    return {"teacher_id": teacher.uid}


@pytest.fixture
def app(store, identity, preferences, settings):
    return create_app(store=store, identity=identity, preferences=preferences, settings=settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def auth_headers(client, email, password):
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def admin_headers(client):
    return auth_headers(client, ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def teacher_headers(client, school):
    return auth_headers(client, TEACHER_EMAIL, TEACHER_PASSWORD)
