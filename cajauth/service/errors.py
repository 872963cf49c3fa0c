from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can switch on.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class PasswordMismatch(ValidationError):
    """Password and confirmation differ."""
    error_code = "password_mismatch"


class PasswordTooWeak(ValidationError):
    """Password fails the length policy."""
    error_code = "password_too_weak"


class IncorrectPassword(ValidationError):
    """Current password supplied to a password change is wrong."""
    error_code = "incorrect_password"


class EmailTaken(ValidationError):
    """A user with this email already exists (409)."""
    status_code = 409
    error_code = "email_taken"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown email or wrong password; the two are not distinguished."""
    error_code = "invalid_credentials"


class TokenExpired(AuthenticationError):
    """Signed token is past its expiry (401)."""
    error_code = "token_expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


__all__ = [
    "ServiceError",
    "ValidationError",
    "PasswordMismatch",
    "PasswordTooWeak",
    "IncorrectPassword",
    "EmailTaken",
    "AuthenticationError",
    "InvalidCredentials",
    "TokenExpired",
    "ForbiddenError",
    "NotFoundError",
]
