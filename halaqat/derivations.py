"""Pure derivations from fetched records to dashboard and report aggregates.

Nothing here touches the store. "Today" and "now" are always parameters so
the same inputs give the same outputs.
"""
from collections import Counter
from datetime import date, datetime, timedelta, timezone, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel

from .models import ActivityLog, AttendanceLog, AttendanceStatus, Halaqa, Parent, Student, Teacher

NOT_SPECIFIED = "غير محدد"
DAY_NAMES = ["الأحد", "الاثنين", "الثلاثاء", "الأربعاء", "الخميس", "الجمعة", "السبت"]

MEMORIZATION_WEIGHT = 0.6
ATTENDANCE_WEIGHT = 0.4
TOP_STUDENTS = 3
RECENT_ACTIVITY = 5
ATTENDANCE_HISTORY = 5

EXCELLENT_THRESHOLD = 90
GOOD_THRESHOLD = 70
ATTENTION_ATTENDANCE_THRESHOLD = 90

YEAR_SECONDS = 31536000
MONTH_SECONDS = 2592000
DAY_SECONDS = 86400
HOUR_SECONDS = 3600
MINUTE_SECONDS = 60


def round_half_up(value: float, places: int = 0) -> float:
    exponent = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(exponent, rounding=ROUND_HALF_UP))


def round_int(value: float) -> int:
    return int(round_half_up(value))


def day_key(moment: datetime, tz: Optional[tzinfo] = None) -> date:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz or timezone.utc).date()


def today_in(tz: tzinfo) -> date:
    return datetime.now(tz).date()


def attendance_doc_id(halaqa_id: str, day: date) -> str:
    return f"{halaqa_id}_{day.isoformat()}"


def attendance_window(today: date, tz: tzinfo, days: int = 7):
    """Start of ``today - days`` and end of ``today`` in ``tz``."""
    start = datetime.combine(today - timedelta(days=days), datetime.min.time(), tzinfo=tz)
    end = datetime.combine(today, datetime.max.time(), tzinfo=tz)
    return start, end


# --- Circles ---

def enrich_halaqat(halaqat: Iterable[Halaqa], students: Iterable[Student]) -> List[Halaqa]:
    counts = Counter(student.halaqa_id for student in students)
    return [halaqa.model_copy(update={"student_count": counts.get(halaqa.id, 0)}) for halaqa in halaqat]


def memorization_average(students: Sequence[Student]) -> int:
    if not students:
        return 0
    return round_int(sum(s.memorization_progress for s in students) / len(students))


def halaqa_memorization_averages(halaqat: Iterable[Halaqa], students: Sequence[Student]) -> List[Dict[str, object]]:
    by_halaqa: Dict[str, List[Student]] = {}
    for student in students:
        by_halaqa.setdefault(student.halaqa_id, []).append(student)
    return [
        {"halaqa_id": h.id, "name": h.name, "average": memorization_average(by_halaqa.get(h.id, []))}
        for h in halaqat
    ]


# --- Ranking ---

def composite_score(student: Student) -> float:
    return student.memorization_progress * MEMORIZATION_WEIGHT + student.attendance_rate * ATTENDANCE_WEIGHT


def top_students(students: Iterable[Student], limit: int = TOP_STUDENTS) -> List[Dict[str, object]]:
    scored = [{"student": s, "score": round_half_up(composite_score(s), 2)} for s in students]
    # sorted() is stable, equal scores keep their input order
    scored.sort(key=lambda item: composite_score(item["student"]), reverse=True)
    return scored[:limit]


# --- Attendance ---

def attendance_summary(records: Dict[str, AttendanceStatus]) -> Dict[str, int]:
    counts = {"present": 0, "absent": 0, "late": 0}
    for status in records.values():
        counts[status] += 1
    return counts


def daily_attendance_rates(logs: Iterable[AttendanceLog], tz: Optional[tzinfo] = None) -> Dict[date, int]:
    totals: Dict[date, List[int]] = {}
    for log in logs:
        attended = sum(1 for status in log.records.values() if status in ("present", "late"))
        bucket = totals.setdefault(day_key(log.date, tz), [0, 0])
        bucket[0] += attended
        bucket[1] += len(log.records)
    return {day: round_int(attended / total * 100) for day, (attended, total) in totals.items() if total > 0}


class TrendPoint(BaseModel):
    day: date
    label: str
    rate: Optional[int] = None

    @property
    def chart_value(self) -> int:
        return self.rate if self.rate is not None else 0

    @property
    def has_data(self) -> bool:
        return self.rate is not None


def weekly_attendance_trend(rates: Dict[date, int], today: date) -> List[TrendPoint]:
    points = []
    for offset in range(6, -1, -1):
        day = today - timedelta(days=offset)
        # isoweekday: Monday=1 .. Sunday=7, DAY_NAMES starts on Sunday
        points.append(TrendPoint(day=day, label=DAY_NAMES[day.isoweekday() % 7], rate=rates.get(day)))
    return points


class AttendanceChange(BaseModel):
    difference: int
    change_type: str  # "increase" | "decrease"

    @property
    def label(self) -> str:
        return f"{abs(self.difference)}%"


def attendance_change(rates: Dict[date, int], today: date) -> Optional[AttendanceChange]:
    today_rate = rates.get(today)
    yesterday_rate = rates.get(today - timedelta(days=1))
    if today_rate is None or yesterday_rate is None:
        return None
    diff = today_rate - yesterday_rate
    if diff == 0:
        return None
    return AttendanceChange(difference=diff, change_type="increase" if diff > 0 else "decrease")


def todays_log(logs: Iterable[AttendanceLog], halaqa_id: str, today: date, tz: Optional[tzinfo] = None) -> Optional[AttendanceLog]:
    for log in logs:
        if log.halaqa_id == halaqa_id and day_key(log.date, tz) == today:
            return log
    return None


def attendance_form(
    students: Iterable[Student],
    logs: Iterable[AttendanceLog],
    halaqa_id: str,
    today: date,
    tz: Optional[tzinfo] = None,
) -> Dict[str, object]:
    existing = todays_log(logs, halaqa_id, today, tz)
    members = [s for s in students if s.halaqa_id == halaqa_id]
    records = {s.id: (existing.records.get(s.id, "present") if existing else "present") for s in members}
    return {"records": records, "loaded_existing": existing is not None, "summary": attendance_summary(records)}


def student_attendance_history(
    student_id: str, logs: Iterable[AttendanceLog], limit: int = ATTENDANCE_HISTORY
) -> List[Dict[str, object]]:
    history = [{"date": log.date, "status": log.records[student_id]} for log in logs if student_id in log.records]
    history.sort(key=lambda item: item["date"], reverse=True)
    return history[:limit]


# --- Activity feed ---

def format_time_ago(timestamp: Optional[datetime], now: datetime) -> str:
    if timestamp is None:
        return ""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    seconds = int((now - timestamp).total_seconds())
    if seconds > YEAR_SECONDS:
        return f"قبل {seconds // YEAR_SECONDS} سنوات"
    if seconds > MONTH_SECONDS:
        return f"قبل {seconds // MONTH_SECONDS} أشهر"
    if seconds > DAY_SECONDS:
        return f"قبل {seconds // DAY_SECONDS} أيام"
    if seconds > HOUR_SECONDS:
        return f"قبل {seconds // HOUR_SECONDS} ساعات"
    if seconds > MINUTE_SECONDS:
        return f"قبل {seconds // MINUTE_SECONDS} دقائق"
    return "قبل لحظات"


def recent_activity(logs: Iterable[ActivityLog], now: datetime, limit: int = RECENT_ACTIVITY) -> List[Dict[str, object]]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    ordered = sorted(logs, key=lambda log: log.timestamp or epoch, reverse=True)[:limit]
    return [{"log": log, "time_ago": format_time_ago(log.timestamp, now)} for log in ordered]


# --- Distribution and rollups ---

def performance_tier(progress: float) -> str:
    if progress >= EXCELLENT_THRESHOLD:
        return "excellent"
    if progress >= GOOD_THRESHOLD:
        return "good"
    return "needs_attention"


def performance_distribution(students: Iterable[Student]) -> Dict[str, int]:
    distribution = {"excellent": 0, "good": 0, "needs_attention": 0}
    for student in students:
        distribution[performance_tier(student.memorization_progress)] += 1
    return distribution


def halaqa_name(halaqat: Iterable[Halaqa], halaqa_id: Optional[str]) -> str:
    return next((h.name for h in halaqat if h.id == halaqa_id), NOT_SPECIFIED)


def teacher_name(teachers: Iterable[Teacher], teacher_id: Optional[str]) -> str:
    return next((t.name for t in teachers if t.id == teacher_id), NOT_SPECIFIED)


def teacher_rollup(teacher: Teacher, halaqat: Iterable[Halaqa], students: Iterable[Student]) -> Dict[str, object]:
    assigned = [h for h in halaqat if h.teacher_id == teacher.id]
    own_students = [s for s in students if s.teacher_id == teacher.id]
    return {
        "teacher": teacher,
        "halaqat": assigned,
        "student_count": len(own_students),
        "average_memorization": memorization_average(own_students),
    }


def filter_students(
    students: Iterable[Student],
    teacher_id: Optional[str] = None,
    search: str = "",
    halaqa_id: Optional[str] = None,
    min_memorization: float = 0,
) -> List[Student]:
    term = (search or "").lower()
    return [
        s
        for s in students
        if (not teacher_id or s.teacher_id == teacher_id)
        and term in s.name.lower()
        and (not halaqa_id or s.halaqa_id == halaqa_id)
        and s.memorization_progress >= min_memorization
    ]


def children_of(parent: Parent, students: Iterable[Student]) -> List[Student]:
    return [s for s in students if s.parent_id == parent.id]


def parent_child_counts(parents: Iterable[Parent], students: Sequence[Student]) -> Dict[str, int]:
    counts = Counter(s.parent_id for s in students if s.parent_id)
    return {p.id: counts.get(p.id, 0) for p in parents}


# --- Dashboards ---

def admin_dashboard(
    students: Sequence[Student],
    teachers: Sequence[Teacher],
    halaqat: Sequence[Halaqa],
    attendance_logs: Sequence[AttendanceLog],
    activity_logs: Sequence[ActivityLog],
    today: date,
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> Dict[str, object]:
    rates = daily_attendance_rates(attendance_logs, tz)
    today_rate = rates.get(today)
    return {
        "total_students": len(students),
        "total_teachers": len(teachers),
        "total_halaqat": len(halaqat),
        "halaqa_memorization": halaqa_memorization_averages(halaqat, students),
        "top_students": top_students(students),
        "attendance_taken": today_rate is not None,
        "today_attendance_rate": today_rate if today_rate is not None else 0,
        "weekly_attendance": weekly_attendance_trend(rates, today),
        "attendance_change": attendance_change(rates, today),
        "recent_activity": recent_activity(activity_logs, now),
    }


def teacher_dashboard(teacher: Teacher, students: Sequence[Student], halaqat: Sequence[Halaqa]) -> Dict[str, object]:
    assigned = [h for h in halaqat if h.teacher_id == teacher.id]
    own_students = [s for s in students if s.teacher_id == teacher.id]
    if not own_students:
        return {
            "halaqa_count": len(assigned),
            "student_count": 0,
            "average_memorization": 0,
            "average_attendance": 0,
            "halaqa_memorization": [],
            "top_students": [],
            "students_needing_attention": [],
        }
    needing_attention = [
        s for s in own_students
        if s.memorization_progress < GOOD_THRESHOLD or s.attendance_rate < ATTENTION_ATTENDANCE_THRESHOLD
    ]
    return {
        "halaqa_count": len(assigned),
        "student_count": len(own_students),
        "average_memorization": memorization_average(own_students),
        "average_attendance": round_int(sum(s.attendance_rate for s in own_students) / len(own_students)),
        "halaqa_memorization": halaqa_memorization_averages(assigned, own_students),
        "top_students": sorted(own_students, key=lambda s: s.memorization_progress, reverse=True)[:TOP_STUDENTS],
        "students_needing_attention": sorted(needing_attention, key=lambda s: s.memorization_progress)[:TOP_STUDENTS],
    }


# --- Reports ---

def _mean_one_decimal(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return round_half_up(sum(values) / len(values), 1)


def build_report(
    students: Sequence[Student],
    teachers: Sequence[Teacher],
    halaqat: Sequence[Halaqa],
    halaqa_id: Optional[str] = None,
) -> Dict[str, object]:
    selected = [s for s in students if s.halaqa_id == halaqa_id] if halaqa_id else list(students)
    by_halaqa: Dict[str, List[float]] = {}
    for student in students:
        by_halaqa.setdefault(student.halaqa_id, []).append(student.memorization_progress)
    halaqa_performance = [
        {
            "halaqa_id": h.id,
            "name": h.name,
            "average": (sum(by_halaqa[h.id]) / len(by_halaqa[h.id])) if by_halaqa.get(h.id) else 0,
        }
        for h in halaqat
    ]
    top_halaqa = {"halaqa_id": None, "name": "N/A", "average": 0}
    for item in halaqa_performance:
        if top_halaqa["halaqa_id"] is None or item["average"] > top_halaqa["average"]:
            top_halaqa = item
    rows = [
        {
            "student": s,
            "halaqa_name": halaqa_name(halaqat, s.halaqa_id),
            "teacher_name": teacher_name(teachers, s.teacher_id),
        }
        for s in selected
    ]
    return {
        "scope": halaqa_name(halaqat, halaqa_id) if halaqa_id else "all",
        "student_count": len(selected),
        "average_memorization": _mean_one_decimal([s.memorization_progress for s in selected]),
        "average_attendance": _mean_one_decimal([s.attendance_rate for s in selected]),
        "distribution": performance_distribution(selected),
        "halaqa_performance": halaqa_performance,
        "top_halaqa": top_halaqa,
        "rows": rows,
    }
