import logging
from datetime import date, tzinfo
from typing import List

from pydantic import BaseModel

from .derivations import RECENT_ACTIVITY, attendance_window, enrich_halaqat
from .models import ActivityLog, AttendanceLog, Halaqa, MemorizationLog, Parent, Student, Teacher, parse_records
from .store import ACTIVITY_LOGS, DAILY_ATTENDANCE, HALAQAT, MEMORIZATION_LOGS, PARENTS, STUDENTS, TEACHERS

logger = logging.getLogger(__name__)


class Snapshot(BaseModel):
    students: List[Student] = []
    teachers: List[Teacher] = []
    halaqat: List[Halaqa] = []
    parents: List[Parent] = []
    attendance_logs: List[AttendanceLog] = []
    activity_logs: List[ActivityLog] = []


async def fetch_snapshot(store, today: date, tz: tzinfo) -> Snapshot:
    """Full pull of every collection the dashboards read, with derived circle counts."""
    teachers = parse_records(Teacher, await store.collection(TEACHERS).list_all())
    students = parse_records(Student, await store.collection(STUDENTS).list_all())
    halaqat = enrich_halaqat(parse_records(Halaqa, await store.collection(HALAQAT).list_all()), students)
    parents = parse_records(Parent, await store.collection(PARENTS).list_all())
    start, end = attendance_window(today, tz)
    attendance_logs = parse_records(
        AttendanceLog,
        await store.collection(DAILY_ATTENDANCE).find([("date", ">=", start), ("date", "<=", end)]),
    )
    activity_logs = parse_records(
        ActivityLog,
        await store.collection(ACTIVITY_LOGS).find(order_by="timestamp", descending=True, limit=RECENT_ACTIVITY),
    )
    logger.debug(
        "Fetched %d students, %d teachers, %d halaqat, %d attendance logs",
        len(students), len(teachers), len(halaqat), len(attendance_logs),
    )
    return Snapshot(
        students=students,
        teachers=teachers,
        halaqat=halaqat,
        parents=parents,
        attendance_logs=attendance_logs,
        activity_logs=activity_logs,
    )


async def fetch_memorization_history(store, student_id: str) -> List[MemorizationLog]:
    docs = await store.collection(MEMORIZATION_LOGS).find(
        [("student_id", "==", student_id)], order_by="date", descending=True
    )
    return parse_records(MemorizationLog, docs)
