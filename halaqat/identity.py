"""Email/password identity provider with revocable sessions.

Credentials live in ``auth_identities`` keyed by uid; every sign-in opens a
row in ``auth_sessions`` whose id is carried in the token, so signing out
revokes the token even before it expires.
"""
import inspect
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from .errors import IdentityError
from .models import MIN_PASSWORD_LENGTH
from .store import AUTH_IDENTITIES, AUTH_SESSIONS, new_id

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

SessionListener = Callable[[Optional["Identity"]], Any]


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


class Identity(BaseModel):
    uid: str
    email: str


class Provisioner:
    """Short-lived handle for creating identities without touching the caller's session."""

    def __init__(self, provider: "IdentityProvider"):
        self._provider = provider
        self._open = True

    async def create_identity(self, email: str, password: str) -> Identity:
        if not self._open:
            raise RuntimeError("Provisioner already torn down")
        return await self._provider._create_identity(email, password)

    def close(self) -> None:
        self._open = False


class IdentityProvider:
    def __init__(self, store, secret: Optional[str], expire_minutes: int = 60 * 24 * 7):
        self._store = store
        self._secret = secret
        self._expire_minutes = expire_minutes
        self._listeners: List[SessionListener] = []

    # --- session-change notifications ---

    def on_session_change(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _notify(self, identity: Optional[Identity]) -> None:
        for listener in list(self._listeners):
            result = listener(identity)
            if inspect.isawaitable(result):
                await result

    # --- lookups ---

    async def _identity_doc_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        docs = await self._store.collection(AUTH_IDENTITIES).find([("email", "==", email.strip().lower())], limit=1)
        return docs[0] if docs else None

    async def _create_identity(self, email: str, password: str) -> Identity:
        email = email.strip().lower()
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise IdentityError(IdentityError.WEAK_PASSWORD, "كلمة المرور الجديدة ضعيفة جداً.")
        if await self._identity_doc_by_email(email):
            raise IdentityError(IdentityError.EMAIL_ALREADY_IN_USE, "هذا البريد الإلكتروني مسجل بالفعل.")
        uid = await self._store.collection(AUTH_IDENTITIES).create(
            {"email": email, "password_hash": get_password_hash(password), "created_at": datetime.now(timezone.utc)}
        )
        logger.info("Provisioned identity %s for %s", uid, email)
        return Identity(uid=uid, email=email)

    # --- sign in / out ---

    def _issue_token(self, identity: Identity, session_id: str, expire: datetime) -> str:
        payload = {"sub": identity.uid, "sid": session_id, "exp": expire}
        return jwt.encode(payload, self._secret, algorithm=TOKEN_ALGORITHM)

    async def sign_in(self, email: str, password: str) -> Tuple[Identity, str]:
        doc = await self._identity_doc_by_email(email)
        if not doc or not verify_password(password, doc.get("password_hash") or ""):
            raise IdentityError(IdentityError.INVALID_CREDENTIAL, "البريد الإلكتروني أو كلمة المرور غير صحيحة.")
        identity = Identity(uid=doc["id"], email=doc["email"])
        session_id = new_id()
        now = datetime.now(timezone.utc)
        expire = now + timedelta(minutes=self._expire_minutes)
        # expires_at drives the TTL index on auth_sessions
        await self._store.collection(AUTH_SESSIONS).set(
            session_id, {"uid": identity.uid, "created_at": now, "expires_at": expire}
        )
        token = self._issue_token(identity, session_id, expire)
        await self._notify(identity)
        return identity, token

    async def identity_for_token(self, token: str) -> Identity:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[TOKEN_ALGORITHM])
        except jwt.PyJWTError as exc:
            raise IdentityError(IdentityError.SESSION_EXPIRED, "Invalid token") from exc
        session_id = payload.get("sid")
        uid = payload.get("sub")
        if not session_id or not uid:
            raise IdentityError(IdentityError.SESSION_EXPIRED, "Invalid token")
        session = await self._store.collection(AUTH_SESSIONS).get(session_id)
        if not session or session.get("uid") != uid:
            raise IdentityError(IdentityError.SESSION_EXPIRED, "Session signed out")
        doc = await self._store.collection(AUTH_IDENTITIES).get(uid)
        if not doc:
            raise IdentityError(IdentityError.SESSION_EXPIRED, "Identity not found")
        return Identity(uid=uid, email=doc["email"])

    async def sign_out(self, token: str) -> None:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[TOKEN_ALGORITHM], options={"verify_exp": False})
        except jwt.PyJWTError:
            return
        session_id = payload.get("sid")
        if session_id:
            await self._store.collection(AUTH_SESSIONS).delete(session_id)
        await self._notify(None)

    # --- provisioning ---

    @asynccontextmanager
    async def provisioning(self) -> AsyncIterator[Provisioner]:
        provisioner = Provisioner(self)
        try:
            yield provisioner
        finally:
            provisioner.close()

    # --- passwords ---

    async def reauthenticate(self, uid: str, password: str) -> Dict[str, Any]:
        doc = await self._store.collection(AUTH_IDENTITIES).get(uid)
        if not doc or not verify_password(password, doc.get("password_hash") or ""):
            raise IdentityError(IdentityError.WRONG_PASSWORD, "كلمة المرور الحالية غير صحيحة.")
        return doc

    async def change_password(self, uid: str, current_password: str, new_password: str) -> None:
        await self.reauthenticate(uid, current_password)
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise IdentityError(IdentityError.WEAK_PASSWORD, "كلمة المرور الجديدة ضعيفة جداً.")
        await self._store.collection(AUTH_IDENTITIES).update(
            uid, {"password_hash": get_password_hash(new_password), "updated_at": datetime.now(timezone.utc)}
        )
