import io
import logging
from datetime import date, datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from starlette.middleware.cors import CORSMiddleware

from . import derivations, reports, workflows
from .config import Settings, configure_logging
from .errors import DashboardError, ErrorKind, IdentityError, NotProvisionedError, StoreError
from .identity import Identity, IdentityProvider
from .models import (
    AttendanceSubmission,
    AuthLogin,
    HalaqaForm,
    MemorizationSubmission,
    ParentForm,
    PasswordChange,
    ProfileUpdate,
    SettingsUpdate,
    StudentForm,
    TeacherForm,
    field_errors,
    timestamp_payload,
    utc_now,
)
from .preferences import LocalPreferences
from .session import (
    allowed_pages,
    can_manage_halaqa,
    landing_page,
    owner_id,
    page_title,
    resolve_session,
    visible_halaqat,
    visible_students,
)
from .snapshot import Snapshot, fetch_memorization_history, fetch_snapshot
from .store import HALAQAT, PARENTS, STUDENTS, TEACHERS, MongoRecordStore

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_PROVISIONED: status.HTTP_403_FORBIDDEN,
    ErrorKind.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.FAILED_PRECONDITION: status.HTTP_409_CONFLICT,
    ErrorKind.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
}
STATUS_BY_IDENTITY_CODE = {
    IdentityError.INVALID_CREDENTIAL: status.HTTP_401_UNAUTHORIZED,
    IdentityError.EMAIL_ALREADY_IN_USE: status.HTTP_409_CONFLICT,
    IdentityError.WRONG_PASSWORD: status.HTTP_400_BAD_REQUEST,
    IdentityError.WEAK_PASSWORD: status.HTTP_400_BAD_REQUEST,
    IdentityError.SESSION_EXPIRED: status.HTTP_401_UNAUTHORIZED,
}

security = HTTPBearer(auto_error=False)


def wire(value: Any) -> Any:
    """JSON-ready copy of ``value``; timestamps become ``{seconds, nanoseconds}``."""
    if isinstance(value, BaseModel):
        return wire(value.model_dump())
    if isinstance(value, datetime):
        return timestamp_payload(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: wire(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [wire(item) for item in value]
    return value


# --- dependencies ---

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request):
    return request.app.state.store


def get_identity(request: Request) -> IdentityProvider:
    if not get_settings(request).jwt_secret:
        raise HTTPException(status_code=500, detail="JWT secret not configured")
    return request.app.state.identity


def get_preferences(request: Request) -> LocalPreferences:
    return request.app.state.preferences


async def get_current_session(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
):
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    identity_provider = get_identity(request)
    settings = get_settings(request)
    identity = await identity_provider.identity_for_token(credentials.credentials)
    try:
        session = await resolve_session(
            identity, get_store(request), get_preferences(request), settings.admin_email, settings.admin_name
        )
    except NotProvisionedError:
        await identity_provider.sign_out(credentials.credentials)
        raise
    request.state.token = credentials.credentials
    return session


async def require_admin(session=Depends(get_current_session)):
    if session.kind != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return session


def _today(settings: Settings) -> date:
    return derivations.today_in(settings.timezone)


async def _snapshot(request: Request) -> Snapshot:
    settings = get_settings(request)
    return await fetch_snapshot(get_store(request), _today(settings), settings.timezone)


def _guard(request: Request, workflow: str, session) -> workflows.SubmissionGuard:
    return request.app.state.guards.for_site(workflow, session.uid)


# --- payload builders ---

def session_payload(session) -> Dict[str, Any]:
    return {
        "kind": session.kind,
        "uid": session.uid,
        "name": session.name,
        "email": session.email,
        "teacher_id": owner_id(session),
        "pages": allowed_pages(session),
    }


def student_rows(students, snapshot: Snapshot):
    return [
        {
            **wire(student),
            "halaqa_name": derivations.halaqa_name(snapshot.halaqat, student.halaqa_id),
            "teacher_name": derivations.teacher_name(snapshot.teachers, student.teacher_id),
        }
        for student in students
    ]


def halaqa_rows(halaqat, snapshot: Snapshot):
    return [
        {**wire(halaqa), "teacher_name": derivations.teacher_name(snapshot.teachers, halaqa.teacher_id)}
        for halaqa in halaqat
    ]


def attendance_rows(session, snapshot: Snapshot):
    halaqa_ids = {h.id for h in visible_halaqat(session, snapshot.halaqat)}
    return [
        {
            **wire(log),
            "halaqa_name": derivations.halaqa_name(snapshot.halaqat, log.halaqa_id),
            "summary": derivations.attendance_summary(log.records),
        }
        for log in sorted(snapshot.attendance_logs, key=lambda log: log.date, reverse=True)
        if log.halaqa_id in halaqa_ids
    ]


def dashboard_payload(session, snapshot: Snapshot, today: date, now: datetime, tz) -> Dict[str, Any]:
    if session.kind == "admin":
        data = derivations.admin_dashboard(
            snapshot.students,
            snapshot.teachers,
            snapshot.halaqat,
            snapshot.attendance_logs,
            snapshot.activity_logs,
            today,
            now,
            tz,
        )
        change = data["attendance_change"]
        data["weekly_attendance"] = [
            {**wire(point), "chart_value": point.chart_value, "has_data": point.has_data}
            for point in data["weekly_attendance"]
        ]
        data["attendance_change"] = {**wire(change), "label": change.label} if change else None
        data["recent_activity"] = [{**wire(item["log"]), "time_ago": item["time_ago"]} for item in data["recent_activity"]]
        return {"kind": "admin", **wire(data)}
    if session.kind == "teacher":
        data = derivations.teacher_dashboard(session.teacher, snapshot.students, snapshot.halaqat)
        return {"kind": "teacher", **wire(data)}
    raise TypeError(f"Unhandled session kind: {session.kind!r}")


def refetcher(request: Request, session, view: str):
    """Post-commit refetch returning the caller's freshly visible ``view``."""

    async def refetch():
        snapshot = await _snapshot(request)
        if view == STUDENTS:
            return student_rows(visible_students(session, snapshot.students), snapshot)
        if view == HALAQAT:
            return halaqa_rows(visible_halaqat(session, snapshot.halaqat), snapshot)
        if view == TEACHERS:
            return wire(snapshot.teachers)
        if view == PARENTS:
            return wire(snapshot.parents)
        if view == "attendance":
            return attendance_rows(session, snapshot)
        settings = get_settings(request)
        return dashboard_payload(session, snapshot, _today(settings), utc_now(), settings.timezone)

    return refetch


def result_payload(result: workflows.WorkflowResult) -> Dict[str, Any]:
    return {"status": result.state.value, "writes": result.writes, **wire(result.details), "data": result.refreshed}


# --- auth ---

auth_router = APIRouter(prefix="/api/auth")
api_router = APIRouter(prefix="/api", dependencies=[Depends(get_current_session)])


@auth_router.post("/login")
async def login(payload: AuthLogin, request: Request):
    identity_provider = get_identity(request)
    settings = get_settings(request)
    identity, token = await identity_provider.sign_in(payload.email, payload.password)
    try:
        session = await resolve_session(
            identity, get_store(request), get_preferences(request), settings.admin_email, settings.admin_name
        )
    except NotProvisionedError:
        await identity_provider.sign_out(token)
        raise
    return {"access_token": token, "token_type": "bearer", "session": session_payload(session)}


@auth_router.post("/logout")
async def logout(request: Request, session=Depends(get_current_session)):
    await get_identity(request).sign_out(request.state.token)
    return {"status": "signed_out"}


@auth_router.get("/me")
async def get_me(request: Request, page: str = Query("dashboard"), session=Depends(get_current_session)):
    landing = landing_page(session, page)
    return {
        **session_payload(session),
        "page": landing,
        "page_title": page_title(session, landing),
        "is_dark_mode": get_preferences(request).is_dark_mode,
    }


@auth_router.post("/password")
async def change_password(payload: PasswordChange, request: Request, session=Depends(get_current_session)):
    await workflows.change_password(get_identity(request), session.uid, payload)
    return {"status": "ok"}


# --- dashboard ---

@api_router.get("/dashboard")
async def get_dashboard(request: Request, session=Depends(get_current_session)):
    settings = get_settings(request)
    snapshot = await _snapshot(request)
    return dashboard_payload(session, snapshot, _today(settings), utc_now(), settings.timezone)


# --- students ---

@api_router.get("/students")
async def get_students(
    request: Request,
    search: str = Query(""),
    halaqa_id: Optional[str] = Query(None),
    min_memorization: float = Query(0),
    session=Depends(get_current_session),
):
    snapshot = await _snapshot(request)
    students = derivations.filter_students(
        snapshot.students,
        teacher_id=owner_id(session),
        search=search,
        halaqa_id=halaqa_id,
        min_memorization=min_memorization,
    )
    return student_rows(students, snapshot)


@api_router.post("/students")
async def create_student(payload: StudentForm, request: Request, session=Depends(require_admin)):
    result = await workflows.create_student(
        get_store(request), payload, _guard(request, "student", session), refetcher(request, session, STUDENTS)
    )
    return result_payload(result)


@api_router.put("/students/{student_id}")
async def update_student(student_id: str, payload: StudentForm, request: Request, session=Depends(require_admin)):
    result = await workflows.update_student(
        get_store(request), student_id, payload, _guard(request, "student", session), refetcher(request, session, STUDENTS)
    )
    return result_payload(result)


@api_router.delete("/students/{student_id}")
async def delete_student(student_id: str, request: Request, session=Depends(require_admin)):
    result = await workflows.delete_record(
        get_store(request), STUDENTS, student_id, _guard(request, "student", session), refetcher(request, session, STUDENTS)
    )
    return result_payload(result)


def _visible_student(session, snapshot: Snapshot, student_id: str):
    student = next((s for s in visible_students(session, snapshot.students) if s.id == student_id), None)
    if not student:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Student not found")
    return student


@api_router.get("/students/{student_id}/profile")
async def get_student_profile(student_id: str, request: Request, session=Depends(get_current_session)):
    snapshot = await _snapshot(request)
    student = _visible_student(session, snapshot, student_id)
    return {
        **student_rows([student], snapshot)[0],
        "parent": wire(next((p for p in snapshot.parents if p.id == student.parent_id), None)),
        "attendance_history": wire(derivations.student_attendance_history(student.id, snapshot.attendance_logs)),
    }


@api_router.get("/students/{student_id}/memorization-history")
async def get_memorization_history(student_id: str, request: Request, session=Depends(get_current_session)):
    snapshot = await _snapshot(request)
    student = _visible_student(session, snapshot, student_id)
    logs = await fetch_memorization_history(get_store(request), student.id)
    return wire(logs)


# --- halaqat ---

@api_router.get("/halaqat")
async def get_halaqat(request: Request, session=Depends(get_current_session)):
    snapshot = await _snapshot(request)
    return halaqa_rows(visible_halaqat(session, snapshot.halaqat), snapshot)


@api_router.post("/halaqat")
async def create_halaqa(payload: HalaqaForm, request: Request, session=Depends(require_admin)):
    result = await workflows.create_halaqa(
        get_store(request), payload, _guard(request, "halaqa", session), refetcher(request, session, HALAQAT)
    )
    return result_payload(result)


@api_router.put("/halaqat/{halaqa_id}")
async def update_halaqa(halaqa_id: str, payload: HalaqaForm, request: Request, session=Depends(require_admin)):
    result = await workflows.update_halaqa(
        get_store(request), halaqa_id, payload, _guard(request, "halaqa", session), refetcher(request, session, HALAQAT)
    )
    return result_payload(result)


@api_router.delete("/halaqat/{halaqa_id}")
async def delete_halaqa(halaqa_id: str, request: Request, session=Depends(require_admin)):
    result = await workflows.delete_record(
        get_store(request), HALAQAT, halaqa_id, _guard(request, "halaqa", session), refetcher(request, session, HALAQAT)
    )
    return result_payload(result)


# --- teachers ---

@api_router.get("/teachers")
async def get_teachers(request: Request, session=Depends(require_admin)):
    snapshot = await _snapshot(request)
    return [
        {
            **wire(teacher),
            "halaqa_count": sum(1 for h in snapshot.halaqat if h.teacher_id == teacher.id),
            "student_count": sum(1 for s in snapshot.students if s.teacher_id == teacher.id),
        }
        for teacher in snapshot.teachers
    ]


@api_router.post("/teachers")
async def create_teacher(payload: TeacherForm, request: Request, session=Depends(require_admin)):
    result = await workflows.create_teacher(
        get_store(request),
        get_identity(request),
        payload,
        _guard(request, "teacher", session),
        refetcher(request, session, TEACHERS),
    )
    return result_payload(result)


@api_router.put("/teachers/{teacher_id}")
async def update_teacher(teacher_id: str, payload: TeacherForm, request: Request, session=Depends(require_admin)):
    result = await workflows.update_person(
        get_store(request), TEACHERS, teacher_id, payload, _guard(request, "teacher", session),
        refetcher(request, session, TEACHERS),
    )
    return result_payload(result)


@api_router.delete("/teachers/{teacher_id}")
async def delete_teacher(teacher_id: str, request: Request, session=Depends(require_admin)):
    result = await workflows.delete_record(
        get_store(request), TEACHERS, teacher_id, _guard(request, "teacher", session), refetcher(request, session, TEACHERS)
    )
    return result_payload(result)


@api_router.get("/teachers/{teacher_id}/summary")
async def get_teacher_summary(teacher_id: str, request: Request, session=Depends(require_admin)):
    snapshot = await _snapshot(request)
    teacher = next((t for t in snapshot.teachers if t.id == teacher_id), None)
    if not teacher:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Teacher not found")
    return wire(derivations.teacher_rollup(teacher, snapshot.halaqat, snapshot.students))


# --- parents ---

@api_router.get("/parents")
async def get_parents(request: Request, session=Depends(require_admin)):
    snapshot = await _snapshot(request)
    counts = derivations.parent_child_counts(snapshot.parents, snapshot.students)
    return [{**wire(parent), "child_count": counts[parent.id]} for parent in snapshot.parents]


@api_router.post("/parents")
async def create_parent(payload: ParentForm, request: Request, session=Depends(require_admin)):
    result = await workflows.create_parent(
        get_store(request), payload, _guard(request, "parent", session), refetcher(request, session, PARENTS)
    )
    return result_payload(result)


@api_router.put("/parents/{parent_id}")
async def update_parent(parent_id: str, payload: ParentForm, request: Request, session=Depends(require_admin)):
    result = await workflows.update_person(
        get_store(request), PARENTS, parent_id, payload, _guard(request, "parent", session),
        refetcher(request, session, PARENTS),
    )
    return result_payload(result)


@api_router.delete("/parents/{parent_id}")
async def delete_parent(parent_id: str, request: Request, session=Depends(require_admin)):
    result = await workflows.delete_record(
        get_store(request), PARENTS, parent_id, _guard(request, "parent", session), refetcher(request, session, PARENTS)
    )
    return result_payload(result)


@api_router.get("/parents/{parent_id}/children")
async def get_parent_children(parent_id: str, request: Request, session=Depends(require_admin)):
    snapshot = await _snapshot(request)
    parent = next((p for p in snapshot.parents if p.id == parent_id), None)
    if not parent:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Parent not found")
    return student_rows(derivations.children_of(parent, snapshot.students), snapshot)


# --- attendance and memorization ---

def _managed_halaqa(session, snapshot: Snapshot, halaqa_id: str):
    halaqa = next((h for h in snapshot.halaqat if h.id == halaqa_id), None)
    if not halaqa:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Halaqa not found")
    if not can_manage_halaqa(session, halaqa):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to manage this halaqa")
    return halaqa


def _submitting_teacher(session, halaqa) -> str:
    teacher_id = owner_id(session) or halaqa.teacher_id
    if not teacher_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="لا يوجد معلم مسؤول عن هذه الحلقة")
    return teacher_id


@api_router.get("/attendance")
async def get_attendance(request: Request, session=Depends(get_current_session)):
    snapshot = await _snapshot(request)
    return attendance_rows(session, snapshot)


@api_router.get("/attendance/form")
async def get_attendance_form(halaqa_id: str, request: Request, session=Depends(get_current_session)):
    settings = get_settings(request)
    snapshot = await _snapshot(request)
    halaqa = _managed_halaqa(session, snapshot, halaqa_id)
    return derivations.attendance_form(
        snapshot.students, snapshot.attendance_logs, halaqa.id, _today(settings), settings.timezone
    )


@api_router.post("/attendance")
async def submit_attendance(payload: AttendanceSubmission, request: Request, session=Depends(get_current_session)):
    settings = get_settings(request)
    snapshot = await _snapshot(request)
    halaqa = _managed_halaqa(session, snapshot, payload.halaqa_id)
    result = await workflows.submit_attendance(
        get_store(request),
        payload.records,
        halaqa.id,
        _submitting_teacher(session, halaqa),
        snapshot.students,
        snapshot.halaqat,
        _today(settings),
        _guard(request, "attendance", session),
        refetcher(request, session, "attendance"),
    )
    return result_payload(result)


@api_router.post("/memorization")
async def submit_memorization(payload: MemorizationSubmission, request: Request, session=Depends(get_current_session)):
    snapshot = await _snapshot(request)
    halaqa = _managed_halaqa(session, snapshot, payload.halaqa_id)
    result = await workflows.submit_memorization(
        get_store(request),
        payload.records,
        halaqa.id,
        _submitting_teacher(session, halaqa),
        snapshot.students,
        snapshot.halaqat,
        _guard(request, "memorization", session),
        refetcher(request, session, "dashboard"),
    )
    return result_payload(result)


# --- reports ---

@api_router.get("/reports")
async def get_report(request: Request, halaqa_id: Optional[str] = Query(None), session=Depends(require_admin)):
    snapshot = await _snapshot(request)
    return wire(derivations.build_report(snapshot.students, snapshot.teachers, snapshot.halaqat, halaqa_id))


@api_router.get("/reports/export")
async def export_report(
    request: Request,
    format: str = Query("pdf"),
    halaqa_id: Optional[str] = Query(None),
    session=Depends(require_admin),
):
    snapshot = await _snapshot(request)
    report = derivations.build_report(snapshot.students, snapshot.teachers, snapshot.halaqat, halaqa_id)
    if format == "excel":
        content = reports.generate_report_excel(report)
        filename = "halaqat_report.xlsx"
        media_type = reports.EXCEL_MEDIA_TYPE
    else:
        settings = get_settings(request)
        content = reports.generate_report_pdf(report, settings.timezone, settings.report_font_path)
        filename = "halaqat_report.pdf"
        media_type = reports.PDF_MEDIA_TYPE
    headers = {"Content-Disposition": f"attachment; filename={filename}"}
    return StreamingResponse(io.BytesIO(content), media_type=media_type, headers=headers)


# --- settings ---

@api_router.get("/settings")
async def get_user_settings(request: Request, session=Depends(get_current_session)):
    return {
        "is_dark_mode": get_preferences(request).is_dark_mode,
        "profile": {"name": session.name, "email": session.email},
        "can_change_email": session.kind == "admin",
    }


@api_router.put("/settings")
async def update_user_settings(payload: SettingsUpdate, request: Request, session=Depends(get_current_session)):
    preferences = get_preferences(request)
    if payload.is_dark_mode is not None:
        preferences.set_dark_mode(payload.is_dark_mode)
    return {"is_dark_mode": preferences.is_dark_mode}


@api_router.put("/settings/profile")
async def update_user_profile(payload: ProfileUpdate, request: Request, session=Depends(get_current_session)):
    return await workflows.update_profile(get_store(request), get_preferences(request), session, payload)


# --- errors ---

async def dashboard_error_handler(request: Request, exc: DashboardError):
    body: Dict[str, Any] = {"detail": exc.message, "kind": exc.kind.value}
    status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if isinstance(exc, IdentityError):
        body["code"] = exc.code
        status_code = STATUS_BY_IDENTITY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST)
    if exc.kind in (ErrorKind.PERMISSION_DENIED, ErrorKind.FAILED_PRECONDITION):
        body["remediation"] = exc.remediation
    if exc.kind == ErrorKind.FAILED_PRECONDITION:
        body["help_url"] = exc.help_url
    if exc.kind == ErrorKind.VALIDATION:
        body["errors"] = exc.field_errors
    if isinstance(exc, StoreError):
        logger.error("%s %s failed (%s): %s", request.method, request.url.path, exc.kind.value, exc.message)
    return JSONResponse(status_code=status_code, content=body)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = field_errors(exc)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Validation failed", "kind": ErrorKind.VALIDATION.value, "errors": errors},
    )


# --- application ---

async def seed_admin_identity(identity_provider: IdentityProvider, settings: Settings) -> None:
    try:
        async with identity_provider.provisioning() as provisioner:
            await provisioner.create_identity(settings.admin_email, settings.admin_password)
        logger.info("Seeded administrator identity %s", settings.admin_email)
    except IdentityError as exc:
        if exc.code != IdentityError.EMAIL_ALREADY_IN_USE:
            raise


def _log_session_change(identity: Optional[Identity]) -> None:
    if identity:
        logger.info("Signed in: %s", identity.email)
    else:
        logger.info("Signed out")


def create_app(
    store=None,
    identity: Optional[IdentityProvider] = None,
    preferences: Optional[LocalPreferences] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="Halaqat Dashboard")
    app.state.settings = settings
    app.state.store = store
    app.state.owns_store = False
    app.state.identity = identity
    if store is not None and identity is None:
        app.state.identity = IdentityProvider(store, settings.jwt_secret, settings.token_expire_minutes)
    app.state.preferences = preferences or LocalPreferences(settings.preferences_path)
    app.state.guards = workflows.SubmissionGuards()

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.on_event("startup")
    async def connect_store():
        if not settings.jwt_secret:
            logger.error("JWT_SECRET environment variable is not set; sign-in will fail until it is configured")
        if app.state.store is None:
            if not settings.mongo_url:
                raise RuntimeError("MONGO_URL environment variable is not set. Please check your .env file.")
            app.state.store = MongoRecordStore.from_url(settings.mongo_url, settings.db_name, settings.index_help_url)
            app.state.owns_store = True
        if app.state.identity is None:
            app.state.identity = IdentityProvider(app.state.store, settings.jwt_secret, settings.token_expire_minutes)
        app.state.identity.on_session_change(_log_session_change)
        try:
            await app.state.store.ping()
            logger.info("MongoDB connection successful")
            if not await app.state.store.supports_transactions():
                logger.warning(
                    "MongoDB is not a replica set; attendance, memorization and circle reassignment "
                    "need transactions and will fail until it is"
                )
        except StoreError as e:
            logger.error("MongoDB connection failed: %s", e)
            logger.error("Please check your MONGO_URL in .env file and ensure MongoDB is accessible")
            return
        try:
            await app.state.store.ensure_indexes()
            await seed_admin_identity(app.state.identity, settings)
        except DashboardError as e:
            logger.error("Error during database seeding: %s", e)
            logger.warning("Continuing without seeding defaults. Some features may not work correctly.")

    @app.on_event("shutdown")
    async def shutdown_db_client():
        if app.state.owns_store:
            app.state.store.close()

    app.add_exception_handler(DashboardError, dashboard_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(auth_router)
    app.include_router(api_router)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    return app


configure_logging()
app = create_app()
