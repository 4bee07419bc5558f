import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ValidationFailed

AttendanceStatus = Literal["present", "absent", "late"]
MemorizationQuality = Literal["good", "average", "repeat"]
ActivityLogType = Literal["new_student", "memorization_log", "absence_log"]

EMAIL_PATTERN = re.compile(r"^\S+@\S+\.\S+$")
PHONE_PATTERN = re.compile(r"^\+?[0-9\s]+$")
MIN_PASSWORD_LENGTH = 6


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def timestamp_payload(value: Optional[datetime]) -> Optional[Dict[str, int]]:
    """Wire form of a stored timestamp: ``{seconds, nanoseconds}``."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    seconds = int(value.timestamp())
    return {"seconds": seconds, "nanoseconds": value.microsecond * 1000}


def field_errors(exc) -> Dict[str, str]:
    """First message per field of a pydantic or request validation error."""
    errors: Dict[str, str] = {}
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body") or "form"
        ctx_error = (err.get("ctx") or {}).get("error")
        message = str(ctx_error) if ctx_error is not None else err.get("msg", "")
        errors.setdefault(field, message)
    return errors


class Record(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str


# --- Students ---

class StudentForm(BaseModel):
    name: str
    age: int
    father_phone_number: Optional[str] = None
    halaqa_id: str
    memorization_progress: float = Field(default=0, ge=0, le=100)
    parent_id: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("اسم الطالب مطلوب")
        return value.strip()

    @field_validator("age")
    @classmethod
    def _age_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("العمر يجب أن يكون رقماً موجباً")
        return value

    @field_validator("father_phone_number")
    @classmethod
    def _phone_digits(cls, value: Optional[str]) -> Optional[str]:
        if value and not PHONE_PATTERN.match(value):
            raise ValueError("رقم الهاتف يجب أن يحتوي على أرقام فقط")
        return value or None

    @field_validator("halaqa_id")
    @classmethod
    def _halaqa_required(cls, value: str) -> str:
        if not value:
            raise ValueError("يجب اختيار حلقة للطالب")
        return value


class Student(Record):
    name: str
    age: int = 0
    father_phone_number: Optional[str] = None
    halaqa_id: str = ""
    teacher_id: str = ""
    memorization_progress: float = 0
    attendance_rate: float = 100
    parent_id: Optional[str] = None


# --- Teachers and parents ---

class PersonForm(BaseModel):
    name: str
    email: str
    password: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("الاسم مطلوب")
        return value.strip()

    @field_validator("email")
    @classmethod
    def _email_format(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("البريد الإلكتروني مطلوب")
        if not EMAIL_PATTERN.match(value):
            raise ValueError("صيغة البريد الإلكتروني غير صحيحة")
        return value

    @field_validator("password")
    @classmethod
    def _password_length(cls, value: Optional[str]) -> Optional[str]:
        if value and len(value) < MIN_PASSWORD_LENGTH:
            raise ValueError("كلمة المرور يجب أن لا تقل عن 6 أحرف")
        return value or None


class TeacherForm(PersonForm):
    pass


class ParentForm(PersonForm):
    pass


class Teacher(Record):
    name: str
    email: str = ""


class Parent(Record):
    name: str
    email: str = ""


# --- Circles ---

class HalaqaForm(BaseModel):
    name: str
    teacher_id: str

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("اسم الحلقة مطلوب")
        return value.strip()

    @field_validator("teacher_id")
    @classmethod
    def _teacher_required(cls, value: str) -> str:
        if not value:
            raise ValueError("يجب اختيار معلم للحلقة")
        return value


class Halaqa(Record):
    name: str
    teacher_id: str = ""
    # Never read from storage; filled in by derivations.enrich_halaqat.
    student_count: int = 0

    @field_validator("student_count", mode="before")
    @classmethod
    def _ignore_stored_count(cls, value: Any) -> int:
        return 0


# --- Logs ---

class AttendanceLog(Record):
    date: datetime
    halaqa_id: str
    teacher_id: str = ""
    records: Dict[str, AttendanceStatus] = {}


class MemorizationLog(Record):
    student_id: str
    halaqa_id: str
    teacher_id: str = ""
    date: datetime
    surah: str
    from_verse: int
    to_verse: int
    quality: MemorizationQuality = "good"
    notes: str = ""


class ActivityDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")
    student_name: Optional[str] = None
    halaqa_name: Optional[str] = None
    teacher_name: Optional[str] = None
    surah: Optional[str] = None


class ActivityLog(Record):
    type: ActivityLogType
    timestamp: Optional[datetime] = None
    details: ActivityDetails = Field(default_factory=ActivityDetails)


# --- Submissions ---

class AttendanceSubmission(BaseModel):
    halaqa_id: str
    records: Dict[str, AttendanceStatus]
    teacher_id: Optional[str] = None


class MemorizationRange(BaseModel):
    surah: str = ""
    from_verse: Union[int, float, str, None] = Field(default=None, alias="from")
    to_verse: Union[int, float, str, None] = Field(default=None, alias="to")

    model_config = ConfigDict(populate_by_name=True)


class MemorizationEntry(BaseModel):
    new_memorization: MemorizationRange = Field(default_factory=MemorizationRange)
    quality: MemorizationQuality = "good"
    notes: str = ""


class MemorizationSubmission(BaseModel):
    halaqa_id: str
    records: Dict[str, MemorizationEntry]
    teacher_id: Optional[str] = None


# --- Profile and settings ---

class ProfileUpdate(BaseModel):
    name: str
    email: str

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("الاسم مطلوب")
        return value.strip()


class PasswordChange(BaseModel):
    current_password: str
    new_password: str
    confirm_password: str

    @field_validator("current_password", "confirm_password")
    @classmethod
    def _filled(cls, value: str) -> str:
        if not value:
            raise ValueError("الرجاء ملء جميع حقول كلمة المرور.")
        return value

    @field_validator("new_password")
    @classmethod
    def _long_enough(cls, value: str) -> str:
        if not value:
            raise ValueError("الرجاء ملء جميع حقول كلمة المرور.")
        if len(value) < MIN_PASSWORD_LENGTH:
            raise ValueError("كلمة المرور الجديدة يجب أن لا تقل عن 6 أحرف.")
        return value

    def check_confirmation(self) -> None:
        if self.new_password != self.confirm_password:
            raise ValidationFailed({"confirm_password": "كلمتا المرور الجديدتان غير متطابقتين."})


class SettingsUpdate(BaseModel):
    is_dark_mode: Optional[bool] = None


class AuthLogin(BaseModel):
    email: str
    password: str


def parse_records(model_cls, docs: List[Dict[str, Any]]) -> List[Any]:
    return [model_cls.model_validate(doc) for doc in docs]
