from enum import Enum
from typing import Dict, Optional


class ErrorKind(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    NOT_PROVISIONED = "not-provisioned"
    VALIDATION = "validation"
    FAILED_PRECONDITION = "failed-precondition"
    UNAVAILABLE = "unavailable"
    NOT_FOUND = "not-found"
    CONFLICT = "conflict"
    IDENTITY = "identity"


# Role definition an operator pastes into mongosh when the service account
# lacks privileges on the dashboard collections.
PERMISSION_REMEDIATION = """use admin
db.createRole({
  role: "halaqatDashboard",
  privileges: [
    { resource: { db: "halaqat_db", collection: "students" }, actions: ["find", "insert", "update", "remove"] },
    { resource: { db: "halaqat_db", collection: "teachers" }, actions: ["find", "insert", "update", "remove"] },
    { resource: { db: "halaqat_db", collection: "halaqat" }, actions: ["find", "insert", "update", "remove"] },
    { resource: { db: "halaqat_db", collection: "parents" }, actions: ["find", "insert", "update", "remove"] },
    { resource: { db: "halaqat_db", collection: "daily_attendance" }, actions: ["find", "insert", "update", "remove"] },
    { resource: { db: "halaqat_db", collection: "memorization_logs" }, actions: ["find", "insert"] },
    { resource: { db: "halaqat_db", collection: "activity_logs" }, actions: ["find", "insert"] },
    { resource: { db: "halaqat_db", collection: "auth_identities" }, actions: ["find", "insert", "update"] },
    { resource: { db: "halaqat_db", collection: "auth_sessions" }, actions: ["find", "insert", "update", "remove"] }
  ],
  roles: []
})
db.grantRolesToUser("<service-user>", [{ role: "halaqatDashboard", db: "admin" }])"""


class DashboardError(Exception):
    kind = ErrorKind.UNAVAILABLE

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class StoreError(DashboardError):
    pass


class PermissionDeniedError(StoreError):
    kind = ErrorKind.PERMISSION_DENIED

    @property
    def remediation(self) -> str:
        return PERMISSION_REMEDIATION


class PreconditionError(StoreError):
    kind = ErrorKind.FAILED_PRECONDITION

    def __init__(self, message: str = "", remediation: str = "", help_url: Optional[str] = None):
        super().__init__(message)
        self.remediation = remediation
        self.help_url = help_url


class UnavailableError(StoreError):
    kind = ErrorKind.UNAVAILABLE


class NotProvisionedError(DashboardError):
    kind = ErrorKind.NOT_PROVISIONED

    def __init__(self, email: str):
        super().__init__(
            f"الحساب ({email}) غير مسجل في النظام. يرجى التأكد من استخدام البريد الإلكتروني الصحيح أو التواصل مع مدير النظام."
        )
        self.email = email


class ValidationFailed(DashboardError):
    kind = ErrorKind.VALIDATION

    def __init__(self, field_errors: Dict[str, str]):
        super().__init__("; ".join(f"{k}: {v}" for k, v in field_errors.items()))
        self.field_errors = field_errors


class NotFoundError(DashboardError):
    kind = ErrorKind.NOT_FOUND


class SubmissionInProgressError(DashboardError):
    kind = ErrorKind.CONFLICT


class IdentityError(DashboardError):
    """Identity provider rejection; ``code`` is one of the ``auth/...``-style codes below."""

    kind = ErrorKind.IDENTITY

    INVALID_CREDENTIAL = "invalid-credential"
    EMAIL_ALREADY_IN_USE = "email-already-in-use"
    WRONG_PASSWORD = "wrong-password"
    WEAK_PASSWORD = "weak-password"
    SESSION_EXPIRED = "session-expired"

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code
