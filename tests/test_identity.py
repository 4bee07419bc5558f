import asyncio

import jwt
import pytest

from halaqat.errors import IdentityError
from halaqat.identity import IdentityProvider
from halaqat.preferences import LocalPreferences
from halaqat.store import AUTH_IDENTITIES, AUTH_SESSIONS


def _provision(identity, email="k@quran.system", password="secret1"):
    async def run():
        async with identity.provisioning() as provisioner:
            return await provisioner.create_identity(email, password)

    return asyncio.run(run())


def test_password_is_hashed(store, identity):
    created = _provision(identity)

    stored = store.data[AUTH_IDENTITIES][created.uid]
    assert stored["email"] == "k@quran.system"
    assert stored["password_hash"] != "secret1"


def test_weak_password_is_rejected(identity):
    with pytest.raises(IdentityError) as excinfo:
        _provision(identity, password="123")

    assert excinfo.value.code == IdentityError.WEAK_PASSWORD


def test_provisioner_is_torn_down_after_scope(identity):
    async def run():
        async with identity.provisioning() as provisioner:
            pass
        await provisioner.create_identity("late@quran.system", "secret1")

    with pytest.raises(RuntimeError):
        asyncio.run(run())


def test_sign_in_issues_token_for_persisted_session(store, identity):
    created = _provision(identity)

    signed_in, token = asyncio.run(identity.sign_in(" K@Quran.System ", "secret1"))

    assert signed_in.uid == created.uid
    payload = jwt.decode(token, "test-secret", algorithms=["HS256"])
    assert payload["sub"] == created.uid
    assert payload["sid"] in store.data[AUTH_SESSIONS]
    assert "email" not in payload
    assert int(store.data[AUTH_SESSIONS][payload["sid"]]["expires_at"].timestamp()) == payload["exp"]
    assert asyncio.run(identity.identity_for_token(token)).uid == created.uid


def test_bad_credentials(identity):
    _provision(identity)

    for email, password in (("k@quran.system", "wrong-pass"), ("nobody@quran.system", "secret1")):
        with pytest.raises(IdentityError) as excinfo:
            asyncio.run(identity.sign_in(email, password))
        assert excinfo.value.code == IdentityError.INVALID_CREDENTIAL


def test_sign_out_revokes_token(identity):
    _provision(identity)
    _, token = asyncio.run(identity.sign_in("k@quran.system", "secret1"))

    asyncio.run(identity.sign_out(token))

    with pytest.raises(IdentityError) as excinfo:
        asyncio.run(identity.identity_for_token(token))
    assert excinfo.value.code == IdentityError.SESSION_EXPIRED


def test_token_signed_with_another_secret_is_rejected(store, identity):
    _provision(identity)
    _, token = asyncio.run(identity.sign_in("k@quran.system", "secret1"))
    other = IdentityProvider(store, "another-secret")

    with pytest.raises(IdentityError):
        asyncio.run(other.identity_for_token(token))


def test_session_change_listeners(identity):
    _provision(identity)
    seen = []

    async def async_listener(current):
        seen.append(("async", current.email if current else None))

    unsubscribe = identity.on_session_change(lambda current: seen.append(("sync", current.email if current else None)))
    identity.on_session_change(async_listener)

    _, token = asyncio.run(identity.sign_in("k@quran.system", "secret1"))
    unsubscribe()
    asyncio.run(identity.sign_out(token))

    assert seen == [("sync", "k@quran.system"), ("async", "k@quran.system"), ("async", None)]


def test_preferences_persist_between_loads(tmp_path):
    path = tmp_path / "prefs" / "preferences.json"
    preferences = LocalPreferences(path)
    assert preferences.is_dark_mode is False

    preferences.set_dark_mode(True)
    preferences.set_admin_profile("مدير", "boss@quran.system")

    reloaded = LocalPreferences(path)
    assert reloaded.is_dark_mode is True
    assert reloaded.admin_profile == {"name": "مدير", "email": "boss@quran.system"}


def test_unreadable_preferences_start_empty(tmp_path):
    path = tmp_path / "preferences.json"
    path.write_text("{not json", encoding="utf-8")

    assert LocalPreferences(path).admin_profile == {}
