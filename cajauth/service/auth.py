from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import ContextManager, List, Optional, Protocol

from cajauth.config import Settings
from cajauth.logging import get_logger
from cajauth.service.errors import (
    AuthenticationError,
    EmailTaken,
    IncorrectPassword,
    InvalidCredentials,
    NotFoundError,
    PasswordMismatch,
    PasswordTooWeak,
    TokenExpired,
)
from cajauth.service.passwords import (
    BCRYPT_MAX_PASSWORD_BYTES,
    InvalidHashError,
    PasswordHasher,
)
from cajauth.service.tokens import REFRESH_TOKEN_TYPE, TokenCodec, TokenFailure
from cajauth.service.verifiers import (
    Accepted,
    AuthContext,
    CredentialVerifier,
    Refused,
    Rejection,
    SessionTokenVerifier,
    SignedTokenVerifier,
    VerifyResult,
)
from cajauth.storage.errors import ConstraintViolation
from cajauth.storage.models import Profile, Session, User, utcnow
from cajauth.storage.sessions import SessionStore

logger = get_logger(__name__)

ADMIN_DISPLAY_NAME = "CAJ-Pro Administrator"


class AuthStore(Protocol):
    def transaction(self, timeout_ms: int | None = None) -> ContextManager: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_live_session(self, token: str, now=None) -> Optional[Session]: ...

    def deactivate_session(self, token: str) -> bool: ...

    def deactivate_session_by_id(self, session_id: str) -> bool: ...


@dataclass
class AuthResult:
    user: User
    session: Session
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = 0


class AuthService:
    """Registration, login, token and session handling over one backing store."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        codec: Optional[TokenCodec] = None,
        sessions: Optional[SessionStore] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.hasher = hasher or PasswordHasher(settings.bcrypt_rounds)
        self.codec = codec or TokenCodec(settings)
        self.sessions = sessions or SessionStore(store)
        # Order matters: stateless check first, then the session table
        self.verifiers: List[CredentialVerifier] = [
            SignedTokenVerifier(self.codec),
            SessionTokenVerifier(self.sessions, store),
        ]

    def _check_new_password(self, password: str, confirm_password: str) -> None:
        if password != confirm_password:
            raise PasswordMismatch("passwords do not match")
        if len(password) < self.settings.password_min_length:
            raise PasswordTooWeak(
                f"password must be at least {self.settings.password_min_length} characters",
                detail={"min_length": self.settings.password_min_length},
            )
        if len(password.encode("utf-8")) > BCRYPT_MAX_PASSWORD_BYTES:
            raise PasswordTooWeak(
                f"password must be at most {BCRYPT_MAX_PASSWORD_BYTES} bytes",
                detail={"max_bytes": BCRYPT_MAX_PASSWORD_BYTES},
            )

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _password_matches(self, user: User, password: str) -> bool:
        try:
            return await asyncio.to_thread(self.hasher.verify, password, user.password_hash)
        except InvalidHashError:
            logger.error("password_hash_invalid", user_id=user.id)
            return False

    def _issue(self, user: User, session: Session) -> AuthResult:
        return AuthResult(
            user=user,
            session=session,
            access_token=self.codec.mint_access(
                user_id=user.id,
                email=user.email,
                is_admin=user.is_admin,
                session_id=session.id,
            ),
            refresh_token=self.codec.mint_refresh(user_id=user.id, session_id=session.id),
            expires_in=self.settings.access_token_ttl_seconds,
        )

    def _create_account(
        self,
        email: str,
        password_hash: str,
        user_agent: str | None,
        ip_address: str | None,
    ) -> AuthResult:
        with self.store.transaction() as tx:
            user = tx.insert_user(User.new(email, password_hash))
            session = self.sessions.create(
                tx,
                user.id,
                self.settings.session_ttl_seconds,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            result = self._issue(user, session)
            tx.insert_profile(Profile(user_id=user.id))
        return result

    async def register(
        self,
        email: str,
        password: str,
        confirm_password: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> AuthResult:
        email = email.strip()
        self._check_new_password(password, confirm_password)
        if await asyncio.to_thread(self.store.get_user_by_email, email) is not None:
            raise EmailTaken("email already registered")
        password_hash = await self._hash(password)

        try:
            result = await asyncio.to_thread(
                self._create_account, email, password_hash, user_agent, ip_address
            )
        except ConstraintViolation as exc:
            if exc.field != "email":
                raise
            # A concurrent registration inserted the address after the pre-check
            logger.info("register_email_race", reason="unique_violation")
            raise EmailTaken("email already registered") from exc
        logger.info("user_registered", user_id=result.user.id, session_id=result.session.id)
        return result

    def _open_session(
        self, user: User, user_agent: str | None, ip_address: str | None
    ) -> tuple[AuthResult, int]:
        with self.store.transaction() as tx:
            purged = self.sessions.purge_expired(tx, user.id)
            session = self.sessions.create(
                tx,
                user.id,
                self.settings.session_ttl_seconds,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            result = self._issue(user, session)
            updated = tx.record_sign_in(user.id, utcnow())
            if updated is not None:
                result.user = updated
        return result, purged

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> AuthResult:
        user = await asyncio.to_thread(self.store.get_user_by_email, email.strip())
        if user is None:
            logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentials("invalid email or password")
        if not await self._password_matches(user, password):
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentials("invalid email or password")

        result, purged = await asyncio.to_thread(
            self._open_session, user, user_agent, ip_address
        )
        logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=result.session.id,
            purged_sessions=purged,
        )
        return result

    def authenticate(self, token: Optional[str]) -> VerifyResult:
        """Run the verifiers in order and return the first acceptance.

        A refusal carries ``expired=True`` when the signed-token verifier saw
        a correctly signed but expired token, so callers can try a refresh.
        The session verifier reads the store; async callers run this in a
        worker thread.
        """
        if not token:
            return Refused(Rejection.MISSING)
        expired = False
        last: VerifyResult = Refused(Rejection.MISSING)
        for verifier in self.verifiers:
            last = verifier.verify(token)
            if isinstance(last, Accepted):
                return last
            expired = expired or last.expired
        return Refused(last.reason, expired=expired)

    async def validate(self, token: Optional[str]) -> Optional[AuthContext]:
        outcome = await asyncio.to_thread(self.authenticate, token)
        if isinstance(outcome, Accepted):
            return outcome.principal
        return None

    async def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        if not refresh_token:
            raise AuthenticationError("refresh token required")
        check = self.codec.verify(refresh_token)
        if not check.ok:
            if check.failure is TokenFailure.EXPIRED:
                raise TokenExpired("refresh token expired")
            raise AuthenticationError("invalid refresh token")
        claims = check.claims
        if claims.get("type") != REFRESH_TOKEN_TYPE:
            raise AuthenticationError("invalid refresh token")

        session = (
            await asyncio.to_thread(self.sessions.get, claims["sid"])
            if claims.get("sid")
            else None
        )
        if session is None or not session.is_live():
            logger.info("refresh_rejected", reason="session_not_live", session_id=claims.get("sid"))
            raise AuthenticationError("session is no longer active")
        user = await asyncio.to_thread(self.store.get_user, str(claims.get("sub")))
        if user is None or user.id != session.user_id:
            logger.warning("refresh_rejected", reason="user_mismatch", session_id=session.id)
            raise AuthenticationError("invalid refresh token")
        logger.info("tokens_refreshed", user_id=user.id, session_id=session.id)
        return self._issue(user, session)

    async def logout(self, token: Optional[str]) -> bool:
        """Deactivate the session behind ``token``. Idempotent.

        Accepts a signed access or refresh token (revokes its ``sid`` session)
        or an opaque session token. Returns whether a live row was flipped.
        """
        if not token:
            return False
        check = self.codec.verify(token)
        if check.ok and check.claims.get("sid"):
            revoked = await asyncio.to_thread(
                self.sessions.deactivate_id, str(check.claims["sid"])
            )
        else:
            revoked = await asyncio.to_thread(self.sessions.deactivate, token)
        logger.info("logout", revoked=revoked)
        return revoked

    def _replace_password(self, user_id: str, password_hash: str) -> int:
        with self.store.transaction() as tx:
            tx.update_password(user_id, password_hash, utcnow())
            return tx.deactivate_user_sessions(user_id)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        confirm_password: str,
    ) -> int:
        """Replace the password and revoke every session the user holds."""
        user = await asyncio.to_thread(self.store.get_user, user_id)
        if user is None:
            raise NotFoundError("user not found")
        self._check_new_password(new_password, confirm_password)
        if not await self._password_matches(user, current_password):
            raise IncorrectPassword("current password is incorrect")
        password_hash = await self._hash(new_password)
        revoked = await asyncio.to_thread(self._replace_password, user.id, password_hash)
        logger.info("password_changed", user_id=user.id, revoked_sessions=revoked)
        return revoked

    def _create_admin(self, email: str, password_hash: str) -> User:
        with self.store.transaction() as tx:
            user = tx.insert_user(
                User.new(email, password_hash, is_admin=True, email_verified=True)
            )
            tx.insert_profile(Profile(user_id=user.id, full_name=ADMIN_DISPLAY_NAME))
        return user

    async def ensure_default_admin(
        self, email: str | None = None, password: str | None = None
    ) -> Optional[User]:
        """Create the administrator account unless one with that email exists.

        Returns the new user, or ``None`` when nothing was created.
        """
        email = (email or self.settings.default_admin_email).strip()
        password = password or self.settings.default_admin_password
        if await asyncio.to_thread(self.store.get_user_by_email, email) is not None:
            return None
        password_hash = await self._hash(password)
        try:
            user = await asyncio.to_thread(self._create_admin, email, password_hash)
        except ConstraintViolation as exc:
            if exc.field != "email":
                raise
            # Another process created it between the check and the insert
            return None
        logger.info("default_admin_created", user_id=user.id)
        if self.settings.is_production and password == "admin123":
            logger.warning("default_admin_password_in_use", user_id=user.id)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)


__all__ = ["AuthContext", "AuthResult", "AuthService", "AuthStore"]
