"""Identity to role resolution and role-based visibility."""
from typing import Annotated, Iterable, List, Literal, Union

from pydantic import BaseModel, Field

from .errors import NotProvisionedError
from .identity import Identity
from .models import Halaqa, Student, Teacher
from .preferences import LocalPreferences
from .store import TEACHERS

ALL_PAGES = [
    "dashboard",
    "students",
    "teachers",
    "halaqat",
    "attendance",
    "memorization",
    "reports",
    "settings",
    "parents",
]
TEACHER_PAGES = ["dashboard", "students", "halaqat", "attendance", "memorization", "settings"]
DEFAULT_PAGE = "dashboard"

PAGE_TITLES = {
    "dashboard": {"admin": "الرئيسية", "teacher": "الرئيسية"},
    "students": {"admin": "إدارة الطلاب", "teacher": "طلابي"},
    "teachers": {"admin": "إدارة المعلمين", "teacher": "إدارة المعلمين"},
    "halaqat": {"admin": "إدارة الحلقات", "teacher": "حلقاتي"},
    "attendance": {"admin": "تسجيل الحضور والغياب", "teacher": "تسجيل الحضور والغياب"},
    "memorization": {"admin": "متابعة الحفظ والتسميع", "teacher": "متابعة الحفظ والتسميع"},
    "reports": {"admin": "التقارير والإحصائيات", "teacher": "التقارير والإحصائيات"},
    "settings": {"admin": "الإعدادات", "teacher": "الإعدادات"},
    "parents": {"admin": "إدارة أولياء الأمور", "teacher": "إدارة أولياء الأمور"},
}


class AdminSession(BaseModel):
    kind: Literal["admin"] = "admin"
    uid: str
    name: str
    email: str


class TeacherSession(BaseModel):
    kind: Literal["teacher"] = "teacher"
    uid: str
    teacher: Teacher

    @property
    def name(self) -> str:
        return self.teacher.name

    @property
    def email(self) -> str:
        return self.teacher.email


Session = Annotated[Union[AdminSession, TeacherSession], Field(discriminator="kind")]


def _unknown_session(session) -> None:
    raise TypeError(f"Unhandled session kind: {getattr(session, 'kind', session)!r}")


async def resolve_session(identity: Identity, store, preferences: LocalPreferences, admin_email: str, admin_name: str):
    if identity.email.strip().lower() == admin_email.strip().lower():
        profile = {"name": admin_name, "email": admin_email, **preferences.admin_profile}
        return AdminSession(uid=identity.uid, name=profile["name"], email=profile["email"])
    doc = await store.collection(TEACHERS).get(identity.uid)
    if doc:
        return TeacherSession(uid=identity.uid, teacher=Teacher.model_validate(doc))
    raise NotProvisionedError(identity.email)


def allowed_pages(session) -> List[str]:
    if session.kind == "admin":
        return list(ALL_PAGES)
    if session.kind == "teacher":
        return list(TEACHER_PAGES)
    _unknown_session(session)


def landing_page(session, requested: str) -> str:
    return requested if requested in allowed_pages(session) else DEFAULT_PAGE


def page_title(session, page: str) -> str:
    return PAGE_TITLES.get(page, PAGE_TITLES[DEFAULT_PAGE])[session.kind]


def owner_id(session):
    """Teacher id the row filters apply to, ``None`` for unrestricted sessions."""
    if session.kind == "admin":
        return None
    if session.kind == "teacher":
        return session.teacher.id
    _unknown_session(session)


def visible_halaqat(session, halaqat: Iterable[Halaqa]) -> List[Halaqa]:
    teacher_id = owner_id(session)
    return [h for h in halaqat if teacher_id is None or h.teacher_id == teacher_id]


def visible_students(session, students: Iterable[Student]) -> List[Student]:
    teacher_id = owner_id(session)
    return [s for s in students if teacher_id is None or s.teacher_id == teacher_id]


def can_manage_halaqa(session, halaqa: Halaqa) -> bool:
    teacher_id = owner_id(session)
    return teacher_id is None or halaqa.teacher_id == teacher_id
