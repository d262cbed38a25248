from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    TRAINER = "trainer"
    MEMBER = "member"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    LOCKED = "locked"


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class UserField(str, Enum):
    """Columns an administrator may change through a user update."""

    USERNAME = "username"
    EMAIL = "email"
    ROLE = "role"
    STATUS = "status"
    EMAIL_VERIFIED = "email_verified"
    MUST_CHANGE_PASSWORD = "must_change_password"
    MEMBER_ID = "member_id"


# Field -> column. Storage adapters only ever interpolate names from this table.
USER_UPDATE_COLUMNS: Dict[UserField, str] = {
    UserField.USERNAME: "username",
    UserField.EMAIL: "email",
    UserField.ROLE: "role",
    UserField.STATUS: "status",
    UserField.EMAIL_VERIFIED: "email_verified",
    UserField.MUST_CHANGE_PASSWORD: "must_change_password",
    UserField.MEMBER_ID: "member_id",
}


@dataclass
class User:
    id: Optional[int]
    username: str
    email: str
    password_hash: str
    password_salt: str
    role: str = Role.MEMBER.value
    status: str = UserStatus.ACTIVE.value
    member_id: Optional[int] = None
    email_verified: bool = False
    must_change_password: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_by: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def public_view(self) -> Dict[str, Any]:
        """User fields safe to return to clients (no credential material)."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "member_id": self.member_id,
            "email_verified": self.email_verified,
            "must_change_password": self.must_change_password,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
        }


@dataclass
class DeviceInfo:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"user_agent": self.user_agent, "ip_address": self.ip_address}


@dataclass
class Session:
    id: str
    user_id: int
    session_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    csrf_token: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        *,
        session_id: str,
        user_id: int,
        session_token: str,
        ttl_minutes: int,
        device_info: DeviceInfo | None = None,
        csrf_token: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        device = device_info or DeviceInfo()
        return cls(
            id=session_id,
            user_id=user_id,
            session_token=session_token,
            expires_at=now + timedelta(minutes=ttl_minutes),
            csrf_token=csrf_token,
            user_agent=device.user_agent,
            ip_address=device.ip_address,
            created_at=now,
            last_used_at=now,
        )

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
            "expires_at": self.expires_at,
        }


@dataclass
class Permission:
    name: str
    description: str = ""
    category: str = ""
    id: Optional[int] = None


@dataclass
class ActivityLogEntry:
    action: str
    user_id: Optional[int] = None
    resource: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    severity: str = Severity.INFO.value
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class SecurityEvent:
    event_type: str
    severity: str = Severity.MEDIUM.value
    user_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


# Permission catalogue seeded into every store; mirrors sql/001_auth_schema.sql
DEFAULT_PERMISSIONS: List[Permission] = [
    Permission("dashboard.view", "View dashboard", "dashboard"),
    Permission("profile.view", "View own profile", "profile"),
    Permission("members.view", "View members", "members"),
    Permission("members.create", "Create members", "members"),
    Permission("members.edit", "Edit members", "members"),
    Permission("plans.view", "View plans", "plans"),
    Permission("plans.create", "Create plans", "plans"),
    Permission("plans.edit", "Edit plans", "plans"),
    Permission("memberships.view", "View memberships", "memberships"),
    Permission("memberships.create", "Create memberships", "memberships"),
    Permission("memberships.edit", "Edit memberships", "memberships"),
    Permission("memberships.delete", "Delete memberships", "memberships"),
    Permission("memberships.bulk_import", "Bulk import memberships", "memberships"),
    Permission("payments.view", "View payments", "payments"),
    Permission("payments.create", "Record payments", "payments"),
    Permission("reports.view", "View reports", "reports"),
    Permission("reports.financial", "View financial reports", "reports"),
    Permission("settings.view", "View settings", "settings"),
    Permission("settings.edit", "Edit settings", "settings"),
    Permission("users.view", "View users", "users"),
    Permission("users.create", "Create users", "users"),
    Permission("users.edit", "Edit users", "users"),
    Permission("users.delete", "Deactivate users", "users"),
    Permission("users.reset_passwords", "Reset user passwords", "users"),
]

DEFAULT_ROLE_GRANTS: Dict[str, List[str]] = {
    Role.ADMIN.value: [perm.name for perm in DEFAULT_PERMISSIONS],
    Role.TRAINER.value: [
        "dashboard.view",
        "profile.view",
        "members.view",
        "plans.view",
        "memberships.view",
        "memberships.create",
        "memberships.edit",
        "payments.view",
        "payments.create",
    ],
    Role.MEMBER.value: ["dashboard.view", "profile.view"],
}
