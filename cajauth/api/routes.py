from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from cajauth.api.error_handling import error_response
from cajauth.api.gate import (
    clear_auth_cookies,
    extract_access_credential,
    extract_refresh_token,
    get_admin_principal,
    get_principal,
    set_auth_cookies,
)
from cajauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    RegisterRequest,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    UserListResponse,
    UserResponse,
)
from cajauth.logging import get_logger
from cajauth.service.auth import AuthResult
from cajauth.service.errors import AuthenticationError, NotFoundError
from cajauth.service.runtime import get_runtime
from cajauth.service.verifiers import AuthContext

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "user_agent": request.headers.get("User-Agent"),
        "ip_address": request.client.host if request.client else None,
    }


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        session_id=result.session.id,
        session_expires_at=result.session.expires_at,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        session_token=result.session.token,
        token_type=result.token_type,
        expires_in=result.expires_in,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a user account and sign it in.

    Sets the access and refresh cookies on success.

    Raises:
        400: password_mismatch or password_too_weak
        409: email_taken
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email, body.password, body.confirm_password, **_client_meta(request)
    )
    set_auth_cookies(response, result, runtime.settings)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: invalid_credentials, for an unknown email or a wrong password alike
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, **_client_meta(request))
    set_auth_cookies(response, result, runtime.settings)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    """Exchange a refresh token (body or cookie) for a new token pair."""
    runtime = get_runtime()
    settings = runtime.settings
    token = (body.refresh_token if body else None) or extract_refresh_token(request, settings)
    try:
        result = await runtime.auth.refresh(token)
    except AuthenticationError as exc:
        rejected = error_response(exc.status_code, exc.message, code=exc.error_code)
        clear_auth_cookies(rejected, settings)
        return rejected
    set_auth_cookies(response, result, settings)
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    """Revoke the current session and clear auth cookies. Always succeeds."""
    runtime = get_runtime()
    settings = runtime.settings
    revoked = False
    for token in (
        extract_access_credential(request, settings),
        extract_refresh_token(request, settings),
    ):
        if token:
            revoked = await runtime.auth.logout(token) or revoked
    clear_auth_cookies(response, settings)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(principal: AuthContext = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=SessionResponse(
            user_id=principal.user_id,
            email=principal.email,
            is_admin=principal.is_admin,
            session_id=principal.session_id,
            source=principal.source,
        ),
    )


@router.get("/auth/user", response_model=Envelope, tags=["auth"])
async def current_user(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.auth.get_user, principal.user_id)
    if user is None:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_principal),
):
    """Change the password and sign out every session, this one included."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        body.confirm_password,
    )
    clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data=PasswordChangeResponse(revoked_sessions=revoked))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    users = await asyncio.to_thread(runtime.auth.list_users, limit)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse.from_user(u) for u in users]),
    )
