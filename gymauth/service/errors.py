from __future__ import annotations

from typing import Iterable, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AccountLockedError(AuthenticationError):
    """Login refused while the account's lockout window is open."""

    def __init__(self, message: str = "Account is temporarily locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenError(AuthenticationError):
    """A bearer token could not be accepted.

    ``reason`` classifies the failure so callers can branch without parsing
    messages: ``expired``, ``invalid`` or ``wrong_type``.
    """

    reason = "invalid"

    def __init__(self, message: str, *, token_type: str = "access", **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("reason", self.reason)
        super().__init__(message, detail=detail, **kwargs)
        self.token_type = token_type


class TokenExpiredError(TokenError):
    reason = "expired"


class TokenInvalidError(TokenError):
    reason = "invalid"


class TokenTypeError(TokenError):
    reason = "wrong_type"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AuthorizationError(ForbiddenError):
    """Permission gate denial; details list what was required and what the user holds."""

    def __init__(
        self,
        message: str = "Insufficient permissions",
        *,
        required: Iterable[str] = (),
        user_permissions: Iterable[str] = (),
    ) -> None:
        self.required = list(required)
        self.user_permissions = sorted(user_permissions)
        super().__init__(
            message,
            detail={"required": self.required, "user_permissions": self.user_permissions},
        )


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AccountLockedError",
    "TokenError",
    "TokenExpiredError",
    "TokenInvalidError",
    "TokenTypeError",
    "ForbiddenError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
]
