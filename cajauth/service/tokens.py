from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from cajauth.config import JwtAlgorithm, Settings
from cajauth.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

_DIGESTS = {
    JwtAlgorithm.HS256: hashlib.sha256,
    JwtAlgorithm.HS384: hashlib.sha384,
    JwtAlgorithm.HS512: hashlib.sha512,
}


class TokenFailure(str, Enum):
    MALFORMED = "malformed"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"


@dataclass(frozen=True)
class TokenCheck:
    """Outcome of :meth:`TokenCodec.verify`: either ``claims`` or a ``failure``."""

    claims: Optional[dict[str, Any]] = None
    failure: Optional[TokenFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.claims is not None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _decode_json_segment(segment: str) -> Optional[dict[str, Any]]:
    try:
        value = json.loads(_decode_segment(segment))
    except (ValueError, TypeError):
        return None
    return value if isinstance(value, dict) else None


class TokenCodec:
    """Compact HMAC-signed JWTs.

    Secret, algorithm, issuer and leeway are fixed at construction. The codec
    checks signature, issuer and expiry only; callers decide what the
    ``type`` claim must be.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self._secret = settings.jwt_secret.encode("utf-8")
        self.algorithm = JwtAlgorithm(settings.jwt_algorithm)
        self._digest = _DIGESTS[self.algorithm]
        self.issuer = settings.jwt_issuer
        self.leeway = settings.token_leeway_seconds
        self.access_ttl = settings.access_token_ttl_seconds
        self.refresh_ttl = settings.refresh_token_ttl_seconds
        self._clock = clock

    def _signature(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode("utf-8"), self._digest).digest()
        )

    def sign(self, claims: dict[str, Any], ttl_seconds: int) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "jti": str(uuid.uuid4()),
            **claims,
            "iat": now,
            "exp": now + int(ttl_seconds),
        }
        header = {"alg": self.algorithm.value, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":"), default=str).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> TokenCheck:
        # compare_digest refuses non-ASCII str, and base64url is ASCII anyway
        if not isinstance(token, str) or not token.isascii():
            return TokenCheck(failure=TokenFailure.MALFORMED)
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            return TokenCheck(failure=TokenFailure.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts

        header = _decode_json_segment(header_b64)
        if header is None:
            return TokenCheck(failure=TokenFailure.MALFORMED)
        # Reject algorithm substitution, including "none"
        if header.get("alg") != self.algorithm.value:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return TokenCheck(failure=TokenFailure.INVALID_SIGNATURE)

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return TokenCheck(failure=TokenFailure.INVALID_SIGNATURE)

        payload = _decode_json_segment(payload_b64)
        if payload is None:
            return TokenCheck(failure=TokenFailure.MALFORMED)
        if payload.get("iss") != self.issuer:
            return TokenCheck(failure=TokenFailure.INVALID_SIGNATURE)
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return TokenCheck(failure=TokenFailure.MALFORMED)
        if exp_ts <= self._clock() - self.leeway:
            return TokenCheck(failure=TokenFailure.EXPIRED)
        return TokenCheck(claims=payload)

    def decode_unsafe(self, token: str) -> Optional[dict[str, Any]]:
        """Claims without any signature or expiry check. Diagnostics only."""
        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3:
            return None
        return _decode_json_segment(parts[1])

    def mint_access(
        self, *, user_id: str, email: str, is_admin: bool, session_id: str
    ) -> str:
        return self.sign(
            {
                "sub": user_id,
                "email": email,
                "is_admin": is_admin,
                "sid": session_id,
                "type": ACCESS_TOKEN_TYPE,
            },
            self.access_ttl,
        )

    def mint_refresh(self, *, user_id: str, session_id: str) -> str:
        return self.sign(
            {"sub": user_id, "sid": session_id, "type": REFRESH_TOKEN_TYPE},
            self.refresh_ttl,
        )


__all__ = [
    "ACCESS_TOKEN_TYPE",
    "REFRESH_TOKEN_TYPE",
    "TokenCheck",
    "TokenCodec",
    "TokenFailure",
]
