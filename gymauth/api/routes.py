from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from gymauth.api.middleware import (
    AuthResult,
    authenticate_request,
    device_info_from_request,
    require_auth,
    require_permissions,
)
from gymauth.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    PasswordChangeRequest,
    PasswordResetRequest,
    PasswordResetResponse,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    PermissionResponse,
    RefreshRequest,
    RefreshResponse,
    SessionResponse,
    UserCreateRequest,
    UserResponse,
    UserUpdateRequest,
)
from gymauth.config import Settings, get_settings
from gymauth.logging import get_logger
from gymauth.service.auth import REFRESH_FAILED, LoginResult
from gymauth.service.errors import AuthenticationError
from gymauth.service.passwords import validate_password_strength
from gymauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix=get_settings().api_prefix)


def _set_cookie(response: Response, settings: Settings, name: str, value: str, *, max_age: int, httponly: bool = True) -> None:
    response.set_cookie(
        name,
        value,
        httponly=httponly,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=max_age,
        path="/",
    )


def _apply_login_cookies(response: Response, result: LoginResult, settings: Settings) -> None:
    _set_cookie(
        response,
        settings,
        settings.auth_cookie_name,
        result.token,
        max_age=settings.access_token_ttl_minutes * 60,
    )
    _set_cookie(
        response,
        settings,
        settings.refresh_cookie_name,
        result.refresh_token,
        max_age=settings.refresh_token_ttl_minutes * 60,
    )
    if result.csrf_token:
        # Readable by page scripts so they can echo it in X-CSRF-Token
        _set_cookie(
            response,
            settings,
            settings.csrf_cookie_name,
            result.csrf_token,
            max_age=settings.session_ttl_minutes * 60,
            httponly=False,
        )


def _clear_login_cookies(response: Response, settings: Settings) -> None:
    for name in (settings.auth_cookie_name, settings.refresh_cookie_name, settings.csrf_cookie_name):
        response.delete_cookie(name, path="/", secure=settings.cookie_secure, samesite="lax")


# -- auth ---------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with a username or email and password.

    Sets the auth, refresh and CSRF cookies on success.

    Raises:
        401: Invalid credentials, or the account is temporarily locked
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.username, body.password, device_info_from_request(request)
    )
    _apply_login_cookies(response, result, runtime.settings)
    permissions = runtime.store.find_permissions_by_role(result.user.role)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=UserResponse.from_user(result.user, permissions),
            token=result.token,
            refresh_token=result.refresh_token,
            expires_at=result.expires_at,
            session_id=result.session_id,
            csrf_token=result.csrf_token,
            must_change_password=result.user.must_change_password,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response, body: Optional[RefreshRequest] = None):
    runtime = get_runtime()
    settings = runtime.settings
    token = (body.refresh_token if body else None) or request.cookies.get(
        settings.refresh_cookie_name
    )
    if not token:
        logger.info("refresh_token_missing", path=request.url.path)
        raise AuthenticationError(REFRESH_FAILED)
    result = await runtime.auth.refresh_token(token, device_info_from_request(request))
    _set_cookie(
        response,
        settings,
        settings.auth_cookie_name,
        result.token,
        max_age=settings.access_token_ttl_minutes * 60,
    )
    return Envelope(
        status="ok", data=RefreshResponse(token=result.token, expires_at=result.expires_at)
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response, body: Optional[LogoutRequest] = None):
    """End the caller's session, or all of them with ``all_sessions``.

    Succeeds without a valid session so clients can always clear state.
    """
    runtime = get_runtime()
    auth = await authenticate_request(request)
    count = 0
    if auth.authenticated:
        count = await runtime.auth.logout(
            auth.session.session_token,
            auth.user.id,
            all_sessions=bool(body and body.all_sessions),
            device_info=device_info_from_request(request),
        )
    else:
        logger.info("logout_without_session", reason=auth.error)
    _clear_login_cookies(response, runtime.settings)
    return Envelope(status="ok", data=LogoutResponse(sessions_invalidated=count))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    auth: AuthResult = Depends(require_auth),
):
    """Change the caller's password; every session of theirs ends, this one included."""
    runtime = get_runtime()
    invalidated = await runtime.auth.change_password(
        auth.user.id,
        body.current_password,
        body.new_password,
        device_info=device_info_from_request(request),
    )
    _clear_login_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"status": "changed", "sessions_invalidated": invalidated})


@router.get("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate(auth: AuthResult = Depends(require_auth)):
    return Envelope(
        status="ok",
        data={
            "valid": True,
            "user": UserResponse(**auth.user.public_view(), permissions=auth.permissions),
            "session_id": auth.session.id,
            "expires_at": auth.session.expires_at,
        },
    )


@router.get("/auth/permissions", response_model=Envelope, tags=["auth"])
async def my_permissions(auth: AuthResult = Depends(require_auth)):
    runtime = get_runtime()
    permissions = runtime.auth.get_user_permissions(auth.user.id)
    return Envelope(
        status="ok",
        data=[
            PermissionResponse(name=p.name, description=p.description, category=p.category)
            for p in permissions
        ],
    )


@router.post("/auth/password-strength", response_model=Envelope, tags=["auth"])
async def password_strength(body: PasswordStrengthRequest):
    strength = validate_password_strength(body.password)
    return Envelope(
        status="ok",
        data=PasswordStrengthResponse(
            is_valid=strength.is_valid, score=strength.score, errors=strength.errors
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(auth: AuthResult = Depends(require_auth)):
    runtime = get_runtime()
    sessions = runtime.auth.get_user_sessions(auth.user.id)
    return Envelope(
        status="ok",
        data=[SessionResponse.from_session(s, current_id=auth.session.id) for s in sessions],
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str, request: Request, auth: AuthResult = Depends(require_auth)
):
    runtime = get_runtime()
    runtime.auth.revoke_session(
        auth.user.id, session_id, device_info=device_info_from_request(request)
    )
    return Envelope(status="ok", data={"revoked": True, "session_id": session_id})


# -- user administration ------------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    include_inactive: bool = Query(False),
    role: Optional[str] = Query(None),
    auth: AuthResult = Depends(require_permissions("users.view")),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(include_inactive=include_inactive, role=role)
    return Envelope(status="ok", data=[UserResponse.from_user(u) for u in users])


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: UserCreateRequest,
    request: Request,
    auth: AuthResult = Depends(require_permissions("users.create")),
):
    runtime = get_runtime()
    user = await runtime.auth.create_user(
        body.username,
        body.email,
        body.password,
        role=body.role.value,
        member_id=body.member_id,
        created_by=auth.user.id,
        must_change_password=body.must_change_password,
        device_info=device_info_from_request(request),
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: int, auth: AuthResult = Depends(require_permissions("users.view"))):
    runtime = get_runtime()
    found = runtime.auth.get_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(found.user, found.permissions))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    user_id: int,
    body: UserUpdateRequest,
    request: Request,
    auth: AuthResult = Depends(require_permissions("users.edit")),
):
    runtime = get_runtime()
    user = await runtime.auth.update_user(
        user_id,
        body.changes(),
        updated_by=auth.user.id,
        device_info=device_info_from_request(request),
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: int,
    request: Request,
    auth: AuthResult = Depends(require_permissions("users.delete")),
):
    runtime = get_runtime()
    await runtime.auth.delete_user(
        user_id, deleted_by=auth.user.id, device_info=device_info_from_request(request)
    )
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id})


@router.post("/users/{user_id}/reset-password", response_model=Envelope, tags=["users"])
async def reset_password(
    user_id: int,
    request: Request,
    body: Optional[PasswordResetRequest] = None,
    auth: AuthResult = Depends(require_permissions("users.reset_passwords")),
):
    """Administrative reset; a generated password is returned once when none is supplied."""
    runtime = get_runtime()
    supplied = body.new_password if body else None
    password = await runtime.auth.reset_user_password(
        user_id,
        supplied,
        reset_by=auth.user.id,
        device_info=device_info_from_request(request),
    )
    return Envelope(
        status="ok",
        data=PasswordResetResponse(
            user_id=user_id, temporary_password=None if supplied else password
        ),
    )


@router.get("/health", response_model=Envelope, tags=["health"])
async def health():
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={
            "status": "healthy",
            "store": "memory" if runtime.settings.use_memory_store else "postgres",
            "cache": "redis" if runtime.cache is not None else "local",
            "needs_setup": runtime.auth.needs_setup(),
            "session_cleanup_running": runtime.session_cleanup.running,
        },
    )
