"""Unit tests for the auth service.

Tests for:
- Registration and login flows
- Dual-path validation (signed token, then session token)
- Refresh and logout
- Password change and admin bootstrap
- Transaction rollback and concurrent logins
"""

import asyncio
import threading
from datetime import timedelta

import pytest

from conftest import make_settings
from cajauth.service.auth import AuthService
from cajauth.service.errors import (
    AuthenticationError,
    EmailTaken,
    IncorrectPassword,
    InvalidCredentials,
    PasswordMismatch,
    PasswordTooWeak,
    TokenExpired,
)
from cajauth.service.tokens import TokenCodec
from cajauth.service.verifiers import Accepted, Refused, Rejection
from cajauth.storage.errors import TokenGenerationExhausted
from cajauth.storage.memory import MemoryStore, MemoryTransaction
from cajauth.storage.models import utcnow
from cajauth.storage.sessions import SessionStore


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(store=memory_store, settings=settings)


def _live_sessions(store, user_id):
    return [s for s in store.sessions.values() if s.user_id == user_id and s.is_live()]


class TestRegister:
    async def test_register_creates_user_session_and_profile(self, auth_service, memory_store):
        result = await auth_service.register("new@example.com", "secret1", "secret1")

        assert result.user.email == "new@example.com"
        assert result.user.is_admin is False
        assert result.user.password_hash != "secret1"
        assert memory_store.get_profile(result.user.id).full_name == ""
        assert _live_sessions(memory_store, result.user.id) == [result.session]
        assert result.token_type == "bearer"
        assert result.expires_in == 3600

    async def test_register_returns_signed_access_token(self, auth_service):
        result = await auth_service.register("signed@example.com", "secret1", "secret1")
        claims = auth_service.codec.verify(result.access_token).claims
        assert claims["sub"] == result.user.id
        assert claims["sid"] == result.session.id
        assert claims["type"] == "access"
        assert result.access_token != result.session.token

    async def test_password_mismatch(self, auth_service, memory_store):
        with pytest.raises(PasswordMismatch):
            await auth_service.register("a@example.com", "secret1", "secret2")
        assert memory_store.users == {}

    async def test_password_too_weak(self, auth_service):
        with pytest.raises(PasswordTooWeak) as excinfo:
            await auth_service.register("a@example.com", "12345", "12345")
        assert excinfo.value.error_code == "password_too_weak"

    async def test_password_over_bcrypt_limit_is_rejected(self, auth_service):
        long_password = "p" * 73
        with pytest.raises(PasswordTooWeak):
            await auth_service.register("a@example.com", long_password, long_password)

    async def test_duplicate_email(self, auth_service):
        await auth_service.register("dup@example.com", "secret1", "secret1")
        with pytest.raises(EmailTaken):
            await auth_service.register("dup@example.com", "secret1", "secret1")

    async def test_racing_registration_is_email_taken(self, auth_service, memory_store, monkeypatch):
        await auth_service.register("race@example.com", "secret1", "secret1")
        # The second caller passes the pre-check before the first commits
        monkeypatch.setattr(memory_store, "get_user_by_email", lambda email: None)
        with pytest.raises(EmailTaken):
            await auth_service.register("race@example.com", "secret1", "secret1")
        assert len(memory_store.users) == 1
        assert len(memory_store.sessions) == 1

    async def test_email_is_case_sensitive(self, auth_service):
        first = await auth_service.register("Case@Example.com", "secret1", "secret1")
        second = await auth_service.register("case@example.com", "secret1", "secret1")
        assert first.user.id != second.user.id

    async def test_failure_rolls_back_everything(self, auth_service, memory_store, monkeypatch):
        def broken_profile(self, profile):
            raise RuntimeError("profiles table unavailable")

        monkeypatch.setattr(MemoryTransaction, "insert_profile", broken_profile)
        with pytest.raises(RuntimeError):
            await auth_service.register("rollback@example.com", "secret1", "secret1")
        assert memory_store.users == {}
        assert memory_store.sessions == {}
        assert memory_store.profiles == {}

    async def test_token_exhaustion_rolls_back_user(self, memory_store, settings):
        service = AuthService(
            memory_store,
            settings,
            sessions=SessionStore(memory_store, token_factory=lambda: "f" * 64),
        )
        await service.register("first@example.com", "secret1", "secret1")
        with pytest.raises(TokenGenerationExhausted):
            await service.register("second@example.com", "secret1", "secret1")
        assert memory_store.get_user_by_email("second@example.com") is None


class TestLogin:
    async def test_register_then_login_round_trip(self, auth_service, memory_store):
        registered = await auth_service.register("alice@x.io", "hunter22", "hunter22")
        result = await auth_service.login("alice@x.io", "hunter22")

        assert result.user.id == registered.user.id
        assert result.session.id != registered.session.id
        assert result.user.last_sign_in_at is not None
        # Two independent sessions, both live
        assert len(_live_sessions(memory_store, registered.user.id)) == 2
        assert auth_service.sessions.find_live(registered.session.token) is not None
        assert auth_service.sessions.find_live(result.session.token) is not None

    async def test_unknown_email_is_invalid_credentials(self, auth_service):
        with pytest.raises(InvalidCredentials) as excinfo:
            await auth_service.login("ghost@x.io", "whatever")
        assert excinfo.value.error_code == "invalid_credentials"

    async def test_wrong_password_is_invalid_credentials(self, auth_service):
        await auth_service.register("bob@x.io", "correct", "correct")
        with pytest.raises(InvalidCredentials) as excinfo:
            await auth_service.login("bob@x.io", "incorrect")
        assert str(excinfo.value) == "invalid email or password"

    async def test_corrupt_hash_is_invalid_credentials(self, auth_service, memory_store):
        registered = await auth_service.register("corrupt@x.io", "secret1", "secret1")
        memory_store.users[registered.user.id].password_hash = "garbage"
        with pytest.raises(InvalidCredentials):
            await auth_service.login("corrupt@x.io", "secret1")

    async def test_login_purges_dead_sessions(self, auth_service, memory_store):
        registered = await auth_service.register("purge@x.io", "secret1", "secret1")
        old = memory_store.sessions[registered.session.id]
        old.expires_at = utcnow() - timedelta(seconds=5)

        await auth_service.login("purge@x.io", "secret1")
        assert registered.session.id not in memory_store.sessions
        assert len(memory_store.sessions) == 1

    async def test_login_records_client_metadata(self, auth_service):
        await auth_service.register("meta@x.io", "secret1", "secret1")
        result = await auth_service.login(
            "meta@x.io", "secret1", user_agent="curl/8", ip_address="10.0.0.1"
        )
        assert result.session.user_agent == "curl/8"
        assert result.session.ip_address == "10.0.0.1"


class TestValidate:
    async def test_alice_scenario(self, auth_service):
        registered = await auth_service.register("alice@x.io", "hunter22", "hunter22")
        login = await auth_service.login("alice@x.io", "hunter22")

        principal = await auth_service.validate(login.access_token)
        assert principal.email == "alice@x.io"
        assert principal.user_id == registered.user.id
        assert principal.source == "token"

        assert await auth_service.logout(login.session.token) is True
        assert await auth_service.validate(login.session.token) is None
        # The registration session is untouched
        assert await auth_service.validate(registered.session.token) is not None

    async def test_session_token_falls_back_to_store(self, auth_service):
        registered = await auth_service.register("s@x.io", "secret1", "secret1")
        principal = await auth_service.validate(registered.session.token)
        assert principal.user_id == registered.user.id
        assert principal.source == "session"
        assert principal.session_id == registered.session.id

    async def test_refresh_token_is_not_an_access_credential(self, auth_service):
        registered = await auth_service.register("r@x.io", "secret1", "secret1")
        outcome = auth_service.authenticate(registered.refresh_token)
        assert isinstance(outcome, Refused)
        assert await auth_service.validate(registered.refresh_token) is None

    async def test_missing_and_garbage_tokens(self, auth_service):
        assert await auth_service.validate(None) is None
        assert await auth_service.validate("") is None
        outcome = auth_service.authenticate("not-a-token")
        assert isinstance(outcome, Refused)
        assert outcome.reason is Rejection.NO_SESSION
        assert outcome.expired is False

    async def test_expired_access_token_is_flagged(self, memory_store, settings):
        clock = FakeClock()
        service = AuthService(memory_store, settings, codec=TokenCodec(settings, clock=clock))
        registered = await service.register("exp@x.io", "secret1", "secret1")
        assert isinstance(service.authenticate(registered.access_token), Accepted)

        clock.now += settings.access_token_ttl_seconds + 1
        outcome = service.authenticate(registered.access_token)
        assert isinstance(outcome, Refused)
        assert outcome.expired is True
        assert await service.validate(registered.access_token) is None


class TestRefresh:
    async def test_refresh_mints_new_pair_for_same_session(self, memory_store, settings):
        clock = FakeClock()
        service = AuthService(memory_store, settings, codec=TokenCodec(settings, clock=clock))
        registered = await service.register("ref@x.io", "secret1", "secret1")
        clock.now += 5

        refreshed = await service.refresh(registered.refresh_token)
        assert refreshed.session.id == registered.session.id
        assert refreshed.access_token != registered.access_token
        principal = await service.validate(refreshed.access_token)
        assert principal.user_id == registered.user.id

    async def test_refresh_rejects_access_token(self, auth_service):
        registered = await auth_service.register("ref2@x.io", "secret1", "secret1")
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(registered.access_token)

    async def test_refresh_rejects_revoked_session(self, auth_service):
        registered = await auth_service.register("ref3@x.io", "secret1", "secret1")
        await auth_service.logout(registered.session.token)
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(registered.refresh_token)

    async def test_refresh_expired(self, memory_store, settings):
        clock = FakeClock()
        service = AuthService(memory_store, settings, codec=TokenCodec(settings, clock=clock))
        registered = await service.register("ref4@x.io", "secret1", "secret1")
        clock.now += settings.refresh_token_ttl_seconds + 1
        with pytest.raises(TokenExpired):
            await service.refresh(registered.refresh_token)

    async def test_refresh_requires_token(self, auth_service):
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(None)


class TestLogout:
    async def test_logout_is_idempotent(self, auth_service):
        registered = await auth_service.register("out@x.io", "secret1", "secret1")
        assert await auth_service.logout(registered.session.token) is True
        assert await auth_service.logout(registered.session.token) is False
        assert await auth_service.logout("never-issued") is False
        assert await auth_service.logout(None) is False

    async def test_logout_with_signed_token_revokes_its_session(self, auth_service):
        registered = await auth_service.register("out2@x.io", "secret1", "secret1")
        assert await auth_service.logout(registered.access_token) is True
        assert auth_service.sessions.find_live(registered.session.token) is None
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(registered.refresh_token)

    async def test_logout_of_one_session_keeps_the_other(self, auth_service):
        await auth_service.register("two@x.io", "secret1", "secret1")
        first = await auth_service.login("two@x.io", "secret1")
        second = await auth_service.login("two@x.io", "secret1")

        assert await auth_service.logout(first.access_token) is True

        assert auth_service.sessions.find_live(first.session.token) is None
        assert auth_service.sessions.find_live(second.session.token) is not None
        principal = await auth_service.validate(second.session.token)
        assert principal.session_id == second.session.id
        refreshed = await auth_service.refresh(second.refresh_token)
        assert refreshed.session.id == second.session.id
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(first.refresh_token)


class TestChangePassword:
    async def test_change_password_revokes_all_sessions(self, auth_service, memory_store):
        registered = await auth_service.register("pw@x.io", "oldpass", "oldpass")
        await auth_service.login("pw@x.io", "oldpass")

        revoked = await auth_service.change_password(
            registered.user.id, "oldpass", "newpass", "newpass"
        )
        assert revoked == 2
        assert _live_sessions(memory_store, registered.user.id) == []
        with pytest.raises(InvalidCredentials):
            await auth_service.login("pw@x.io", "oldpass")
        assert (await auth_service.login("pw@x.io", "newpass")).user.id == registered.user.id

    async def test_change_password_checks_current(self, auth_service):
        registered = await auth_service.register("pw2@x.io", "oldpass", "oldpass")
        with pytest.raises(IncorrectPassword):
            await auth_service.change_password(registered.user.id, "wrong", "newpass", "newpass")
        with pytest.raises(PasswordMismatch):
            await auth_service.change_password(registered.user.id, "oldpass", "newpass", "other")


class TestDefaultAdmin:
    async def test_creates_admin_once(self, auth_service, memory_store, settings):
        admin = await auth_service.ensure_default_admin()
        assert admin.email == settings.default_admin_email
        assert admin.is_admin is True
        assert admin.email_verified_at is not None
        assert memory_store.get_profile(admin.id).full_name == "CAJ-Pro Administrator"

        assert await auth_service.ensure_default_admin() is None
        assert len(memory_store.users) == 1

        login = await auth_service.login(settings.default_admin_email, settings.default_admin_password)
        principal = await auth_service.validate(login.access_token)
        assert principal.is_admin is True

    async def test_custom_credentials(self, auth_service):
        admin = await auth_service.ensure_default_admin("root@corp.io", "rootpass")
        assert admin.email == "root@corp.io"
        assert (await auth_service.login("root@corp.io", "rootpass")).user.is_admin


def test_concurrent_logins_produce_distinct_sessions(memory_store, settings):
    service = AuthService(memory_store, settings)
    emails = [f"user{i}@x.io" for i in range(8)]
    for email in emails:
        asyncio.run(service.register(email, "secret1", "secret1"))

    results = []
    errors = []
    lock = threading.Lock()

    def worker(email):
        try:
            result = asyncio.run(service.login(email, "secret1"))
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            with lock:
                errors.append(exc)
            return
        with lock:
            results.append(result)

    threads = [threading.Thread(target=worker, args=(email,)) for email in emails]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    tokens = {r.session.token for r in results}
    assert len(tokens) == len(emails)
    for result in results:
        assert service.sessions.find_live(result.session.token).user_id == result.user.id


class TestBlockingCalls:
    async def test_store_round_trips_run_in_worker_threads(
        self, auth_service, memory_store, monkeypatch
    ):
        loop_thread = threading.get_ident()
        seen = []

        def recording(method):
            def wrapper(*args, **kwargs):
                seen.append((method.__name__, threading.get_ident()))
                return method(*args, **kwargs)

            return wrapper

        for name in ("transaction", "get_user_by_email", "get_user", "find_live_session"):
            monkeypatch.setattr(memory_store, name, recording(getattr(memory_store, name)))

        registered = await auth_service.register("threads@x.io", "secret1", "secret1")
        await auth_service.login("threads@x.io", "secret1")
        await auth_service.validate(registered.session.token)
        await auth_service.refresh(registered.refresh_token)

        called = {name for name, _ in seen}
        assert {"transaction", "get_user_by_email", "get_user", "find_live_session"} <= called
        assert all(ident != loop_thread for _, ident in seen)
