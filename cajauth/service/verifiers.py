from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Union

from cajauth.service.tokens import ACCESS_TOKEN_TYPE, TokenCodec, TokenFailure
from cajauth.storage.sessions import SessionStore


@dataclass(frozen=True)
class AuthContext:
    """Authenticated principal attached to a request."""

    user_id: str
    email: str
    is_admin: bool = False
    session_id: Optional[str] = None
    source: str = "token"


class Rejection(str, Enum):
    MALFORMED = "malformed"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    WRONG_TOKEN_TYPE = "wrong_token_type"
    NO_SESSION = "no_session"
    UNKNOWN_USER = "unknown_user"
    MISSING = "missing"


@dataclass(frozen=True)
class Accepted:
    principal: AuthContext


@dataclass(frozen=True)
class Refused:
    reason: Rejection
    expired: bool = False


VerifyResult = Union[Accepted, Refused]


class CredentialVerifier(Protocol):
    name: str

    def verify(self, token: str) -> VerifyResult: ...


class SignedTokenVerifier:
    """Stateless check: signed access token, principal read from its claims."""

    name = "signed_token"

    def __init__(self, codec: TokenCodec) -> None:
        self.codec = codec

    def verify(self, token: str) -> VerifyResult:
        check = self.codec.verify(token)
        if not check.ok:
            reason = Rejection(check.failure.value)
            return Refused(reason, expired=check.failure is TokenFailure.EXPIRED)
        claims = check.claims
        if claims.get("type") != ACCESS_TOKEN_TYPE:
            return Refused(Rejection.WRONG_TOKEN_TYPE)
        if not claims.get("sub") or not isinstance(claims.get("email"), str):
            return Refused(Rejection.MALFORMED)
        return Accepted(
            AuthContext(
                user_id=str(claims["sub"]),
                email=claims["email"],
                is_admin=bool(claims.get("is_admin", False)),
                session_id=claims.get("sid"),
                source="token",
            )
        )


class SessionTokenVerifier:
    """Stateful check: opaque token looked up among live session rows."""

    name = "session"

    def __init__(self, sessions: SessionStore, store) -> None:
        self.sessions = sessions
        self.store = store

    def verify(self, token: str) -> VerifyResult:
        session = self.sessions.find_live(token)
        if session is None:
            return Refused(Rejection.NO_SESSION)
        user = self.store.get_user(session.user_id)
        if user is None:
            return Refused(Rejection.UNKNOWN_USER)
        return Accepted(
            AuthContext(
                user_id=user.id,
                email=user.email,
                is_admin=user.is_admin,
                session_id=session.id,
                source="session",
            )
        )


__all__ = [
    "Accepted",
    "AuthContext",
    "CredentialVerifier",
    "Refused",
    "Rejection",
    "SessionTokenVerifier",
    "SignedTokenVerifier",
    "VerifyResult",
]
