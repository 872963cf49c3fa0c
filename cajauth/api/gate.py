from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import Depends, Request, Response

from cajauth.api.error_handling import error_response
from cajauth.config import Settings
from cajauth.logging import get_logger
from cajauth.service.auth import AuthResult
from cajauth.service.errors import AuthenticationError, ForbiddenError
from cajauth.service.runtime import get_runtime
from cajauth.service.verifiers import Accepted, AuthContext

logger = get_logger(__name__)

PUBLIC_PATHS = frozenset({
    "/healthz",
    "/docs",
    "/docs/oauth2-redirect",
    "/redoc",
    "/openapi.json",
    "/v1/auth/register",
    "/v1/auth/login",
    "/v1/auth/refresh",
    "/v1/auth/logout",
})


def is_public_path(path: str) -> bool:
    return path.rstrip("/") in PUBLIC_PATHS


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def extract_access_credential(request: Request, settings: Settings) -> Optional[str]:
    """Access cookie first, then an ``Authorization: Bearer`` header."""
    cookie = request.cookies.get(settings.access_cookie_name)
    if cookie:
        return cookie
    return _extract_bearer(request.headers.get("Authorization"))


def extract_refresh_token(request: Request, settings: Settings) -> Optional[str]:
    return request.cookies.get(settings.refresh_cookie_name) or None


def set_auth_cookies(response: Response, result: AuthResult, settings: Settings) -> None:
    response.set_cookie(
        settings.access_cookie_name,
        result.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.access_token_ttl_seconds,
        path="/",
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        result.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
    )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in (settings.access_cookie_name, settings.refresh_cookie_name):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite="lax",
        )


def _principal_from_result(result: AuthResult) -> AuthContext:
    return AuthContext(
        user_id=result.user.id,
        email=result.user.email,
        is_admin=result.user.is_admin,
        session_id=result.session.id,
        source="refresh",
    )


def _reject(
    settings: Settings, message: str, *, code: str = "unauthorized", clear_cookies: bool = False
) -> Response:
    response = error_response(401, message, code=code)
    if clear_cookies:
        clear_auth_cookies(response, settings)
    return response


async def request_gate(request: Request, call_next):
    """Authenticate every non-public request before it reaches a route.

    On success the principal is stored at ``request.state.principal``. An
    expired access credential, or a missing one while a refresh cookie is
    present, triggers a transparent refresh whose new cookies are set on the
    outgoing response.
    """
    if request.method == "OPTIONS" or is_public_path(request.url.path):
        return await call_next(request)

    runtime = get_runtime()
    settings = runtime.settings
    credential = extract_access_credential(request, settings)
    refresh_token = extract_refresh_token(request, settings)

    outcome = await asyncio.to_thread(runtime.auth.authenticate, credential)
    refreshed: Optional[AuthResult] = None
    if isinstance(outcome, Accepted):
        principal = outcome.principal
    elif outcome.expired or credential is None:
        if not refresh_token:
            return _reject(
                settings,
                "session expired" if outcome.expired else "authentication required",
                code="token_expired" if outcome.expired else "unauthorized",
                clear_cookies=outcome.expired,
            )
        try:
            refreshed = await runtime.auth.refresh(refresh_token)
        except AuthenticationError as exc:
            logger.info(
                "gate_refresh_failed", path=request.url.path, error_code=exc.error_code
            )
            return _reject(settings, "session expired, sign in again", clear_cookies=True)
        principal = _principal_from_result(refreshed)
        logger.info("gate_refreshed_session", user_id=principal.user_id, path=request.url.path)
    else:
        logger.info("gate_rejected", path=request.url.path, reason=outcome.reason.value)
        return _reject(settings, "invalid credentials")

    request.state.principal = principal
    response = await call_next(request)
    if refreshed is not None:
        set_auth_cookies(response, refreshed, settings)
    return response


def get_principal(request: Request) -> AuthContext:
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise AuthenticationError("authentication required")
    return principal


def get_admin_principal(principal: AuthContext = Depends(get_principal)) -> AuthContext:
    if not principal.is_admin:
        raise ForbiddenError("admin access required")
    return principal
