from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gymauth.logging import get_correlation_id
from gymauth.service.errors import ServiceError
from gymauth.service.passwords import normalize_email, normalize_unicode
from gymauth.storage.models import Permission, Role, Session, User, UserStatus

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code``."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    try:
        return normalize_email(value)
    except ServiceError as exc:
        raise ValueError(exc.message) from exc


# -- requests -----------------------------------------------------------------


class LoginRequest(BaseModel):
    """Credentials; ``username`` accepts a username or an email address."""

    username: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("username")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return normalize_unicode(value.strip())


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(BaseModel):
    all_sessions: bool = False


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=256)


class PasswordStrengthRequest(BaseModel):
    password: str = Field(..., max_length=256)


class UserCreateRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    email: str
    password: str = Field(..., min_length=1, max_length=256)
    role: Role = Role.MEMBER
    member_id: Optional[int] = None
    must_change_password: bool = False

    @field_validator("email")
    @classmethod
    def _validate_create_email(cls, value: str) -> str:
        return _validate_email(value)


class UserUpdateRequest(BaseModel):
    """Administrative user update; unknown fields are rejected outright."""

    model_config = ConfigDict(extra="forbid")

    username: Optional[str] = Field(default=None, min_length=1, max_length=64)
    email: Optional[str] = None
    role: Optional[Role] = None
    status: Optional[UserStatus] = None
    email_verified: Optional[bool] = None
    must_change_password: Optional[bool] = None
    member_id: Optional[int] = None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, mode="json")


class PasswordResetRequest(BaseModel):
    new_password: Optional[str] = Field(default=None, min_length=1, max_length=256)


# -- responses ----------------------------------------------------------------


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    role: str
    status: str
    member_id: Optional[int] = None
    email_verified: bool = False
    must_change_password: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime
    permissions: Optional[List[str]] = None

    @classmethod
    def from_user(cls, user: User, permissions: Optional[List[Permission]] = None) -> "UserResponse":
        return cls(
            **user.public_view(),
            permissions=[p.name for p in permissions] if permissions is not None else None,
        )


class SessionResponse(BaseModel):
    id: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, *, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(**session.public_view(), current=session.id == current_id)


class LoginResponse(BaseModel):
    user: UserResponse
    token: str
    refresh_token: str
    expires_at: datetime
    session_id: str
    csrf_token: Optional[str] = None
    must_change_password: bool = False


class RefreshResponse(BaseModel):
    token: str
    expires_at: datetime


class LogoutResponse(BaseModel):
    sessions_invalidated: int


class PermissionResponse(BaseModel):
    name: str
    description: str = ""
    category: str = ""


class PasswordStrengthResponse(BaseModel):
    is_valid: bool
    score: int
    errors: List[str]


class PasswordResetResponse(BaseModel):
    user_id: int
    temporary_password: Optional[str] = None
