"""Multi-record mutations that keep derived references consistent.

Every workflow has the same shape: validate the inputs, build (and commit) an
atomic batch, then call the post-commit ``refetch`` so callers never render
state older than their own write.
"""
import logging
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from pydantic import BaseModel

from .derivations import attendance_doc_id, attendance_summary
from .errors import NotFoundError, StoreError, SubmissionInProgressError, ValidationFailed
from .identity import IdentityProvider
from .models import (
    AttendanceStatus,
    Halaqa,
    HalaqaForm,
    MemorizationEntry,
    ParentForm,
    PasswordChange,
    ProfileUpdate,
    Student,
    StudentForm,
    TeacherForm,
    utc_now,
)
from .preferences import LocalPreferences
from .store import ACTIVITY_LOGS, DAILY_ATTENDANCE, HALAQAT, MEMORIZATION_LOGS, PARENTS, STUDENTS, TEACHERS

logger = logging.getLogger(__name__)

Refetch = Callable[[], Awaitable[Any]]


class WorkflowState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    FAILED = "failed"


class WorkflowResult(BaseModel):
    state: WorkflowState
    writes: int = 0
    details: Dict[str, Any] = {}
    refreshed: Any = None


class SubmissionGuard:
    """At most one submission in flight for one invocation site."""

    def __init__(self, name: str = ""):
        self.name = name
        self.state = WorkflowState.IDLE
        self.in_flight = False
        self.last_error: Optional[Exception] = None

    async def run(
        self,
        submit: Callable[[], Awaitable[WorkflowResult]],
        validate: Optional[Callable[[], None]] = None,
        refetch: Optional[Refetch] = None,
    ) -> WorkflowResult:
        if self.in_flight:
            raise SubmissionInProgressError(f"{self.name or 'submission'} already in progress")
        self.in_flight = True
        self.last_error = None
        try:
            self.state = WorkflowState.VALIDATING
            if validate:
                validate()
            self.state = WorkflowState.SUBMITTING
            result = await submit()
            self.state = WorkflowState.SUCCESS
        except Exception as exc:
            self.state = WorkflowState.FAILED
            self.last_error = exc
            raise
        finally:
            self.in_flight = False
        result.state = self.state
        if refetch:
            result.refreshed = await refetch()
        return result


class SubmissionGuards:
    def __init__(self):
        self._guards: Dict[str, SubmissionGuard] = {}

    def for_site(self, workflow: str, owner: str) -> SubmissionGuard:
        key = f"{workflow}:{owner}"
        if key not in self._guards:
            self._guards[key] = SubmissionGuard(key)
        return self._guards[key]


async def _run(guard: Optional[SubmissionGuard], submit, validate=None, refetch: Optional[Refetch] = None) -> WorkflowResult:
    return await (guard or SubmissionGuard()).run(submit, validate=validate, refetch=refetch)


def _find(items: Sequence[Any], item_id: Optional[str]):
    return next((item for item in items if item.id == item_id), None)


# --- Attendance ---

async def submit_attendance(
    store,
    records: Dict[str, AttendanceStatus],
    halaqa_id: str,
    teacher_id: str,
    students: Sequence[Student],
    halaqat: Sequence[Halaqa],
    today: date,
    guard: Optional[SubmissionGuard] = None,
    refetch: Optional[Refetch] = None,
) -> WorkflowResult:
    """Overwrite the circle's attendance document for ``today`` and log every absence."""

    def validate() -> None:
        if not halaqa_id:
            raise ValidationFailed({"halaqa_id": "يجب اختيار حلقة"})

    async def submit() -> WorkflowResult:
        doc_id = attendance_doc_id(halaqa_id, today)
        now = utc_now()
        batch = store.batch()
        batch.set(
            DAILY_ATTENDANCE,
            doc_id,
            {"date": now, "halaqa_id": halaqa_id, "teacher_id": teacher_id, "records": dict(records)},
        )
        halaqa = _find(halaqat, halaqa_id)
        for student_id, status in records.items():
            if status != "absent":
                continue
            student = _find(students, student_id)
            if student and halaqa:
                batch.create(
                    ACTIVITY_LOGS,
                    {
                        "type": "absence_log",
                        "timestamp": now,
                        "details": {"student_name": student.name, "halaqa_name": halaqa.name},
                    },
                )
        await batch.commit()
        logger.info("Attendance %s saved with %d writes", doc_id, len(batch.operations))
        return WorkflowResult(
            state=WorkflowState.SUBMITTING,
            writes=len(batch.operations),
            details={"doc_id": doc_id, "summary": attendance_summary(records)},
        )

    return await _run(guard, submit, validate, refetch)


# --- Memorization ---

def coerce_verse(value: Any) -> Optional[int]:
    """Non-negative int for a verse field, ``None`` when blank or not numeric."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        return None


async def submit_memorization(
    store,
    records: Dict[str, MemorizationEntry],
    halaqa_id: str,
    teacher_id: str,
    students: Sequence[Student],
    halaqat: Sequence[Halaqa],
    guard: Optional[SubmissionGuard] = None,
    refetch: Optional[Refetch] = None,
) -> WorkflowResult:
    async def submit() -> WorkflowResult:
        now = utc_now()
        halaqa = _find(halaqat, halaqa_id)
        batch = store.batch()
        logged = []
        for student_id, entry in records.items():
            surah = (entry.new_memorization.surah or "").strip()
            from_verse = coerce_verse(entry.new_memorization.from_verse)
            to_verse = coerce_verse(entry.new_memorization.to_verse)
            # verse 0 counts as blank, same as an empty field
            if not surah or not from_verse or not to_verse:
                continue
            to_verse = max(to_verse, from_verse)
            batch.create(
                MEMORIZATION_LOGS,
                {
                    "student_id": student_id,
                    "halaqa_id": halaqa_id,
                    "teacher_id": teacher_id,
                    "date": now,
                    "surah": surah,
                    "from_verse": from_verse,
                    "to_verse": to_verse,
                    "quality": entry.quality,
                    "notes": entry.notes,
                },
            )
            logged.append(student_id)
            student = _find(students, student_id)
            if student and halaqa:
                batch.create(
                    ACTIVITY_LOGS,
                    {
                        "type": "memorization_log",
                        "timestamp": now,
                        "details": {"student_name": student.name, "halaqa_name": halaqa.name, "surah": surah},
                    },
                )
        await batch.commit()
        return WorkflowResult(
            state=WorkflowState.SUBMITTING, writes=len(batch.operations), details={"logged_students": logged}
        )

    return await _run(guard, submit, None, refetch)


# --- Students ---

async def _halaqa_for(store, halaqa_id: str) -> Halaqa:
    doc = await store.collection(HALAQAT).get(halaqa_id)
    if not doc:
        raise NotFoundError("Halaqa not found")
    return Halaqa.model_validate(doc)


async def create_student(
    store, form: StudentForm, guard: Optional[SubmissionGuard] = None, refetch: Optional[Refetch] = None
) -> WorkflowResult:
    async def submit() -> WorkflowResult:
        halaqa = await _halaqa_for(store, form.halaqa_id)
        data = {**form.model_dump(), "teacher_id": halaqa.teacher_id, "attendance_rate": 100}
        student_id = await store.collection(STUDENTS).create(data)
        writes = 1
        try:
            await store.collection(ACTIVITY_LOGS).create(
                {
                    "type": "new_student",
                    "timestamp": utc_now(),
                    "details": {"student_name": form.name, "halaqa_name": halaqa.name},
                }
            )
            writes += 1
        except StoreError as exc:
            logger.warning("Activity log for new student %s not written: %s", student_id, exc)
        return WorkflowResult(state=WorkflowState.SUBMITTING, writes=writes, details={"id": student_id})

    return await _run(guard, submit, None, refetch)


async def update_student(
    store, student_id: str, form: StudentForm, guard: Optional[SubmissionGuard] = None, refetch: Optional[Refetch] = None
) -> WorkflowResult:
    async def submit() -> WorkflowResult:
        halaqa = await _halaqa_for(store, form.halaqa_id)
        updated = await store.collection(STUDENTS).update(student_id, {**form.model_dump(), "teacher_id": halaqa.teacher_id})
        if not updated:
            raise NotFoundError("Student not found")
        return WorkflowResult(state=WorkflowState.SUBMITTING, writes=1, details={"id": student_id})

    return await _run(guard, submit, None, refetch)


# --- Circles ---

async def create_halaqa(
    store, form: HalaqaForm, guard: Optional[SubmissionGuard] = None, refetch: Optional[Refetch] = None
) -> WorkflowResult:
    async def submit() -> WorkflowResult:
        halaqa_id = await store.collection(HALAQAT).create(form.model_dump())
        return WorkflowResult(state=WorkflowState.SUBMITTING, writes=1, details={"id": halaqa_id})

    return await _run(guard, submit, None, refetch)


async def update_halaqa(
    store, halaqa_id: str, form: HalaqaForm, guard: Optional[SubmissionGuard] = None, refetch: Optional[Refetch] = None
) -> WorkflowResult:
    """Update a circle; a teacher change cascades to every enrolled student in one batch."""

    async def submit() -> WorkflowResult:
        current = await store.collection(HALAQAT).get(halaqa_id)
        if not current:
            raise NotFoundError("Halaqa not found")
        old_teacher_id = current.get("teacher_id")
        data = form.model_dump()
        if old_teacher_id and old_teacher_id != form.teacher_id:
            batch = store.batch()
            batch.update(HALAQAT, halaqa_id, data)
            members = await store.collection(STUDENTS).find([("halaqa_id", "==", halaqa_id)])
            for member in members:
                batch.update(STUDENTS, member["id"], {"teacher_id": form.teacher_id})
            await batch.commit()
            logger.info(
                "Halaqa %s reassigned from %s to %s (%d students)",
                halaqa_id, old_teacher_id, form.teacher_id, len(members),
            )
            return WorkflowResult(
                state=WorkflowState.SUBMITTING,
                writes=len(batch.operations),
                details={"id": halaqa_id, "reassigned_students": len(members)},
            )
        await store.collection(HALAQAT).update(halaqa_id, data)
        return WorkflowResult(state=WorkflowState.SUBMITTING, writes=1, details={"id": halaqa_id})

    return await _run(guard, submit, None, refetch)


# --- Teachers and parents ---

async def create_teacher(
    store,
    identity: IdentityProvider,
    form: TeacherForm,
    guard: Optional[SubmissionGuard] = None,
    refetch: Optional[Refetch] = None,
) -> WorkflowResult:
    def validate() -> None:
        if not form.password:
            raise ValidationFailed({"password": "كلمة المرور مطلوبة"})

    async def submit() -> WorkflowResult:
        async with identity.provisioning() as provisioner:
            created = await provisioner.create_identity(form.email, form.password)
        profile = form.model_dump(exclude={"password"})
        try:
            await store.collection(TEACHERS).set(created.uid, profile)
        except StoreError:
            logger.error("Teacher profile write failed; identity %s (%s) is orphaned", created.uid, created.email)
            raise
        return WorkflowResult(state=WorkflowState.SUBMITTING, writes=2, details={"id": created.uid})

    return await _run(guard, submit, validate, refetch)


async def update_person(
    store, collection: str, doc_id: str, form, guard: Optional[SubmissionGuard] = None, refetch: Optional[Refetch] = None
) -> WorkflowResult:
    """Teacher or parent edit; the password never reaches the profile document."""

    async def submit() -> WorkflowResult:
        updated = await store.collection(collection).update(doc_id, form.model_dump(exclude={"password"}))
        if not updated:
            raise NotFoundError("Record not found")
        return WorkflowResult(state=WorkflowState.SUBMITTING, writes=1, details={"id": doc_id})

    return await _run(guard, submit, None, refetch)


async def create_parent(
    store, form: ParentForm, guard: Optional[SubmissionGuard] = None, refetch: Optional[Refetch] = None
) -> WorkflowResult:
    async def submit() -> WorkflowResult:
        parent_id = await store.collection(PARENTS).create(form.model_dump(exclude={"password"}))
        return WorkflowResult(state=WorkflowState.SUBMITTING, writes=1, details={"id": parent_id})

    return await _run(guard, submit, None, refetch)


# --- Deletes ---

async def delete_record(
    store, collection: str, doc_id: str, guard: Optional[SubmissionGuard] = None, refetch: Optional[Refetch] = None
) -> WorkflowResult:
    """Single-document delete. Nothing cascades; dangling references render as not specified."""

    async def submit() -> WorkflowResult:
        deleted = await store.collection(collection).delete(doc_id)
        if not deleted:
            raise NotFoundError("Record not found")
        if collection == TEACHERS:
            logger.warning("Teacher %s deleted; its sign-in identity still exists and must be removed separately", doc_id)
        return WorkflowResult(state=WorkflowState.SUBMITTING, writes=1, details={"id": doc_id})

    return await _run(guard, submit, None, refetch)


# --- Profile ---

async def update_profile(store, preferences: LocalPreferences, session, update: ProfileUpdate) -> Dict[str, str]:
    if session.kind == "admin":
        preferences.set_admin_profile(update.name, update.email)
        return {"name": update.name, "email": update.email}
    if session.kind == "teacher":
        await store.collection(TEACHERS).update(session.teacher.id, {"name": update.name})
        return {"name": update.name, "email": session.teacher.email}
    raise TypeError(f"Unhandled session kind: {session.kind!r}")


async def change_password(identity: IdentityProvider, uid: str, change: PasswordChange) -> None:
    change.check_confirmation()
    await identity.change_password(uid, change.current_password, change.new_password)
