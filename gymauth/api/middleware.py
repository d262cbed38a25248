from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from fastapi import Request

from gymauth.api.error_handling import (
    _error_response,
    is_api_path,
    login_redirect,
    rate_limited_response,
    unauthorized_redirect,
)
from gymauth.logging import get_logger
from gymauth.service.authorization import (
    ADMIN_ROLES,
    MEMBER_ROLES,
    TRAINER_ROLES,
    PermissionMode,
    check_permissions,
    is_public_route,
    missing_permissions,
    role_allowed,
    route_permissions,
)
from gymauth.service.errors import AuthenticationError, AuthorizationError, TokenError
from gymauth.service.runtime import get_runtime
from gymauth.service.tokens import extract_bearer
from gymauth.storage.models import DeviceInfo, Session, Severity, User

logger = get_logger(__name__)

CSRF_HEADER = "X-CSRF-Token"
_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}

# Paths outside the API prefix that never need a login
_UNGUARDED_PREFIXES = ("/healthz", "/docs", "/redoc", "/openapi.json", "/favicon.ico", "/static")
_RATE_LIMIT_EXEMPT_PREFIXES = ("/static", "/favicon.ico", "/healthz")


@dataclass
class AuthResult:
    authenticated: bool
    user: Optional[User] = None
    session: Optional[Session] = None
    permissions: List[str] = field(default_factory=list)
    token_source: Optional[str] = None
    error: Optional[str] = None


def extract_token(request: Request) -> tuple[Optional[str], Optional[str]]:
    """Return ``(token, source)``; the Authorization header wins over the cookie."""
    bearer = extract_bearer(request.headers.get("Authorization"))
    if bearer:
        return bearer, "header"
    cookie = request.cookies.get(get_runtime().settings.auth_cookie_name)
    if cookie:
        return cookie, "cookie"
    return None, None


def device_info_from_request(request: Request) -> DeviceInfo:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and forwarded.split(",")[0].strip():
        ip = forwarded.split(",")[0].strip()
    elif request.headers.get("X-Real-IP"):
        ip = request.headers["X-Real-IP"].strip()
    elif request.client and request.client.host:
        ip = request.client.host
    else:
        ip = "unknown"
    return DeviceInfo(user_agent=request.headers.get("User-Agent"), ip_address=ip)


async def authenticate_request(request: Request) -> AuthResult:
    """Resolve the caller from a bearer header or auth cookie.

    The result is cached on ``request.state.auth`` once authentication
    succeeds, so later dependencies in the same request reuse it.
    """
    cached = getattr(request.state, "auth", None)
    if isinstance(cached, AuthResult) and cached.authenticated:
        return cached

    runtime = get_runtime()
    token, source = extract_token(request)
    if not token:
        return AuthResult(False, error="No authentication token provided")

    device_info = device_info_from_request(request)
    try:
        claims = runtime.codec.verify_access_token(token)
    except TokenError as exc:
        runtime.audit.log_security_event(
            "invalid_token_access",
            severity=Severity.MEDIUM,
            details={"path": request.url.path, "reason": exc.detail.get("reason"), "error": exc.message},
            device_info=device_info,
        )
        return AuthResult(False, token_source=source, error=exc.message)

    view = runtime.sessions.validate_session_id(claims.get("session_id"))
    if view is None or str(view.user.id) != str(claims.get("sub")):
        return AuthResult(False, token_source=source, error="Session expired or invalid")
    if not view.user.is_active:
        return AuthResult(False, token_source=source, error="User account is not active")

    permissions = [perm.name for perm in runtime.store.find_permissions_by_role(view.user.role)]
    result = AuthResult(
        True,
        user=view.user,
        session=view.session,
        permissions=permissions,
        token_source=source,
    )
    request.state.auth = result
    runtime.audit.log_activity(
        view.user.id,
        "page_access",
        resource=request.url.path,
        details={"method": request.method},
        device_info=device_info,
    )
    return result


async def require_auth(request: Request) -> AuthResult:
    """FastAPI dependency: the authenticated caller, or a 401."""
    result = await authenticate_request(request)
    if not result.authenticated:
        raise AuthenticationError(result.error or "Authentication required")
    return result


def _deny(request: Request, auth: AuthResult, required: Sequence[str], reason: str) -> AuthorizationError:
    get_runtime().audit.log_security_event(
        "unauthorized_access",
        severity=Severity.HIGH,
        user_id=auth.user.id if auth.user else None,
        details={
            "path": request.url.path,
            "required": list(required),
            "missing": missing_permissions(auth.permissions, required),
            "reason": reason,
        },
        device_info=device_info_from_request(request),
    )
    return AuthorizationError(required=required, user_permissions=auth.permissions)


def require_permissions(
    *names: str,
    mode: PermissionMode = PermissionMode.ANY,
    roles: Sequence[str] = (),
) -> Callable:
    """Build a dependency granting access when the caller holds ``names``.

    ``mode`` picks ANY or ALL semantics; ``roles`` additionally restricts
    the caller's role when non-empty.
    """
    required = list(names)

    async def dependency(request: Request) -> AuthResult:
        auth = await require_auth(request)
        if not role_allowed(auth.user.role, roles):
            raise _deny(request, auth, required or list(roles), "role")
        if not check_permissions(auth.permissions, required, mode):
            raise _deny(request, auth, required, "permission")
        return auth

    return dependency


require_admin = require_permissions(roles=ADMIN_ROLES)
require_trainer = require_permissions(roles=TRAINER_ROLES)
require_member = require_permissions(roles=MEMBER_ROLES)


# -- HTTP middleware ----------------------------------------------------------


async def enforce_rate_limit(request: Request, call_next):
    runtime = get_runtime()
    path = request.url.path
    if not runtime.settings.rate_limit_enabled or any(
        path == p or path.startswith(p + "/") for p in _RATE_LIMIT_EXEMPT_PREFIXES
    ):
        return await call_next(request)
    device_info = device_info_from_request(request)
    key = f"{device_info.ip_address}:{request.method}:{request.url.path}"
    decision = await runtime.rate_limiter.hit(key)
    if not decision.allowed:
        runtime.audit.log_security_event(
            "rate_limit_exceeded",
            severity=Severity.MEDIUM,
            details={"path": request.url.path, "method": request.method, "limit": decision.limit},
            device_info=device_info,
        )
        response = rate_limited_response(decision.retry_after)
        response.headers.update(decision.headers())
        return response
    response = await call_next(request)
    for name, value in decision.headers().items():
        response.headers.setdefault(name, value)
    return response


def _csrf_exempt(path: str) -> bool:
    prefix = get_runtime().settings.api_prefix
    return path in (f"{prefix}/auth/login", f"{prefix}/auth/refresh")


async def enforce_csrf_token(request: Request, call_next):
    # Only cookie-authenticated state-changing requests carry CSRF risk
    if request.method.upper() in _CSRF_SAFE_METHODS or _csrf_exempt(request.url.path):
        return await call_next(request)
    token, source = extract_token(request)
    if source != "cookie":
        return await call_next(request)
    runtime = get_runtime()
    try:
        claims = runtime.codec.verify_access_token(token)
    except TokenError:
        # Authentication rejects the request downstream
        return await call_next(request)
    session = runtime.store.find_session_by_id(claims.get("session_id"))
    expected = session.csrf_token if session else None
    header_token = request.headers.get(CSRF_HEADER) or ""
    if not expected or not hmac.compare_digest(expected.encode(), header_token.encode()):
        logger.warning(
            "csrf_validation_failed",
            path=request.url.path,
            method=request.method,
            header_present=bool(header_token),
        )
        return _error_response(403, "missing or invalid CSRF token", code="forbidden")
    return await call_next(request)


def _guarded_page(path: str) -> bool:
    if is_api_path(path) or is_public_route(path):
        return False
    return not any(path == p or path.startswith(p + "/") for p in _UNGUARDED_PREFIXES)


async def guard_browser_routes(request: Request, call_next):
    """Redirect anonymous or under-privileged browsers away from app pages."""
    if not _guarded_page(request.url.path):
        return await call_next(request)
    auth = await authenticate_request(request)
    if not auth.authenticated:
        return login_redirect(request)
    required = route_permissions(request.url.path)
    if required and not check_permissions(auth.permissions, required, PermissionMode.ANY):
        _deny(request, auth, required, "route")
        return unauthorized_redirect()
    return await call_next(request)
