from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Mapping, Optional, Protocol, Tuple

from gymauth.config import Settings
from gymauth.logging import get_logger
from gymauth.service.audit import AuditLogger
from gymauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServiceError,
    TokenError,
    ValidationError,
)
from gymauth.service.passwords import (
    generate_secure_password,
    generate_secure_token,
    hash_password,
    normalize_email,
    validate_password_strength,
    validate_username,
    verify_password,
)
from gymauth.service.sessions import SessionManager
from gymauth.service.tokens import TokenCodec
from gymauth.storage.errors import ConstraintViolation
from gymauth.storage.models import (
    ActivityLogEntry,
    DeviceInfo,
    Permission,
    Role,
    SecurityEvent,
    Session,
    Severity,
    User,
    UserField,
    UserStatus,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
REFRESH_FAILED = "Failed to refresh token"


def _failure_reason(exc: Exception) -> dict[str, Any]:
    """Audit detail for a failed operation; internal errors are named, not echoed."""
    if isinstance(exc, ServiceError):
        return {"reason": exc.message}
    return {"reason": "internal error", "error_type": type(exc).__name__}



class AuthStore(Protocol):
    def find_user_by_username_or_email(
        self, identifier: str, *, active_only: bool = True
    ) -> Optional[User]: ...

    def find_user_by_id(self, user_id: int) -> Optional[User]: ...

    def find_user_conflict(
        self, username: str | None, email: str | None, *, exclude_user_id: int | None = None
    ) -> Optional[User]: ...

    def insert_user(self, user: User) -> User: ...

    def list_users(
        self, *, include_inactive: bool = False, role: str | None = None
    ) -> List[User]: ...

    def count_admins(self) -> int: ...

    def increment_failed_login(
        self, user_id: int, *, max_attempts: int, lockout_until: datetime
    ) -> Tuple[int, Optional[datetime]]: ...

    def clear_expired_lockout(self, user_id: int, *, locked_until: datetime) -> bool: ...

    def update_user_login_state(
        self,
        user_id: int,
        *,
        failed_login_attempts: int,
        locked_until: datetime | None,
        last_login_at: datetime | None = None,
    ) -> None: ...

    def update_user_password(
        self,
        user_id: int,
        password_hash: str,
        password_salt: str,
        *,
        must_change_password: bool = False,
        reset_lockout: bool = False,
    ) -> bool: ...

    def set_user_status(self, user_id: int, status: str) -> Optional[User]: ...

    def update_user(self, user_id: int, changes: Mapping[UserField, Any]) -> Optional[User]: ...

    def insert_session(self, session: Session) -> Session: ...

    def find_session_by_token(self, session_token: str) -> Optional[Session]: ...

    def find_session_by_id(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, last_used_at: datetime) -> None: ...

    def deactivate_session(self, session_id: str, *, user_id: int | None = None) -> bool: ...

    def deactivate_session_by_token(self, session_token: str) -> int: ...

    def deactivate_user_sessions(self, user_id: int) -> int: ...

    def list_user_sessions(self, user_id: int, now: datetime) -> List[Session]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def find_permissions_by_role(self, role: str) -> List[Permission]: ...

    def insert_activity_log(self, entry: ActivityLogEntry) -> ActivityLogEntry: ...

    def insert_security_event(self, event: SecurityEvent) -> SecurityEvent: ...


@dataclass
class LoginResult:
    user: User
    session: Session
    token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def csrf_token(self) -> Optional[str]:
        return self.session.csrf_token


@dataclass
class RefreshResult:
    token: str
    expires_at: datetime
    user: User
    session: Session


@dataclass
class UserWithPermissions:
    user: User
    permissions: List[Permission] = field(default_factory=list)

    @property
    def permission_names(self) -> List[str]:
        return [perm.name for perm in self.permissions]


class AuthService:
    """Password login, token refresh, password management and user administration."""

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        codec: TokenCodec,
        audit: AuditLogger,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store: AuthStore = store
        self.sessions = sessions
        self.codec = codec
        self.audit = audit
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return self._clock()

    async def _hash(self, plaintext: str) -> Tuple[str, str]:
        return await asyncio.to_thread(
            hash_password, plaintext, rounds=self.settings.bcrypt_rounds
        )

    async def _verify(self, plaintext: str, password_hash: str | None) -> bool:
        return await asyncio.to_thread(verify_password, plaintext, password_hash)

    async def _burn_verify(self, plaintext: str) -> None:
        """Spend one bcrypt check so unknown identifiers cost as much as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash, _ = await self._hash(generate_secure_token())
        await self._verify(plaintext or "x", self._dummy_hash)

    @staticmethod
    def _require_strong(password: str) -> None:
        strength = validate_password_strength(password)
        if not strength.is_valid:
            raise ValidationError(
                "Password does not meet security requirements",
                detail={"errors": strength.errors, "score": strength.score},
            )

    # -- login ---------------------------------------------------------------

    async def login(
        self, identifier: str, password: str, device_info: DeviceInfo | None = None
    ) -> LoginResult:
        """Authenticate by username or email and open a session.

        Every failure other than an open lockout surfaces as the same
        "Invalid credentials" error so callers cannot enumerate accounts.
        """
        identifier = (identifier or "").strip()
        user: Optional[User] = None
        try:
            user = self.store.find_user_by_username_or_email(identifier) if identifier else None
            if user is None:
                await self._burn_verify(password)
                self.audit.log_security_event(
                    "failed_login",
                    severity=Severity.MEDIUM,
                    details={"identifier": identifier, "reason": "unknown_identifier"},
                    device_info=device_info,
                )
                raise AuthenticationError(INVALID_CREDENTIALS)

            now = self._now()
            self._reject_if_locked(user, now, device_info)
            if user.locked_until is not None:
                # Lock window has elapsed: the next attempt starts a fresh count.
                # Conditional on the lock read above; a concurrent increment wins.
                if not self.store.clear_expired_lockout(user.id, locked_until=user.locked_until):
                    logger.info("lockout_reset_skipped", user_id=user.id)
                    user = self.store.find_user_by_id(user.id) or user
                    self._reject_if_locked(user, now, device_info)

            if not await self._verify(password, user.password_hash):
                await self._record_failed_attempt(user, device_info)
                raise AuthenticationError(INVALID_CREDENTIALS)

            self.store.update_user_login_state(
                user.id, failed_login_attempts=0, locked_until=None, last_login_at=now
            )
            user.failed_login_attempts = 0
            user.locked_until = None
            user.last_login_at = now
            created = self.sessions.create_session(user, device_info)
        except Exception as exc:
            self.audit.log_activity(
                user.id if user else None,
                "login_failed",
                resource="auth",
                details=_failure_reason(exc),
                device_info=device_info,
                success=False,
            )
            raise

        self.audit.log_activity(
            user.id,
            "login_success",
            resource="auth",
            details={"session_id": created.session.id},
            device_info=device_info,
        )
        return LoginResult(
            user=user,
            session=created.session,
            token=created.access_token.token,
            refresh_token=created.refresh_token.token,
            expires_at=created.access_token.expires_at,
            refresh_expires_at=created.refresh_token.expires_at,
        )

    def _reject_if_locked(
        self, user: User, now: datetime, device_info: DeviceInfo | None
    ) -> None:
        if not user.is_locked(now):
            return
        self.audit.log_security_event(
            "login_blocked_locked",
            severity=Severity.HIGH,
            user_id=user.id,
            details={"locked_until": user.locked_until.isoformat()},
            device_info=device_info,
        )
        raise AccountLockedError()

    async def _record_failed_attempt(self, user: User, device_info: DeviceInfo | None) -> None:
        max_attempts = self.settings.max_failed_login_attempts
        lockout_until = self._now() + timedelta(minutes=self.settings.lockout_minutes)
        attempts, locked_until = self.store.increment_failed_login(
            user.id, max_attempts=max_attempts, lockout_until=lockout_until
        )
        if attempts >= max_attempts:
            self.audit.log_security_event(
                "account_locked",
                severity=Severity.HIGH,
                user_id=user.id,
                details={
                    "failed_attempts": attempts,
                    "locked_until": locked_until.isoformat() if locked_until else None,
                },
                device_info=device_info,
            )
        else:
            self.audit.log_security_event(
                "failed_login",
                severity=Severity.MEDIUM,
                user_id=user.id,
                details={"message": f"Failed login attempt {attempts}/{max_attempts}"},
                device_info=device_info,
            )

    # -- tokens and sessions -------------------------------------------------

    async def refresh_token(
        self, refresh_token: str, device_info: DeviceInfo | None = None
    ) -> RefreshResult:
        """Mint a new access token for a still-valid session.

        Any failure collapses into one generic error; the cause is only
        recorded in the security event.
        """
        try:
            claims = self.codec.verify_refresh_token(refresh_token)
            view = self.sessions.validate_session_id(claims.get("session_id"))
            if view is None:
                raise AuthenticationError("session not found or expired")
            stored = view.session.refresh_token or ""
            if not hmac.compare_digest(stored.encode(), (refresh_token or "").encode()):
                raise AuthenticationError("refresh token does not match session")
            if str(view.user.id) != str(claims.get("sub")):
                raise AuthenticationError("refresh token subject mismatch")
            if not view.user.is_active:
                raise AuthenticationError("user account is not active")
        except (TokenError, AuthenticationError) as exc:
            self.audit.log_security_event(
                "token_refresh_failed",
                severity=Severity.MEDIUM,
                details={"reason": exc.message},
                device_info=device_info,
            )
            raise AuthenticationError(REFRESH_FAILED) from exc

        access = self.codec.create_access_token(view.user, view.session.id)
        self.audit.log_activity(
            view.user.id,
            "token_refreshed",
            resource="auth",
            details={"session_id": view.session.id},
            device_info=device_info,
        )
        return RefreshResult(
            token=access.token, expires_at=access.expires_at, user=view.user, session=view.session
        )

    async def logout(
        self,
        session_token: str,
        user_id: int | None = None,
        *,
        all_sessions: bool = False,
        device_info: DeviceInfo | None = None,
    ) -> int:
        try:
            count = self.sessions.logout(session_token, user_id, all_sessions=all_sessions)
        except Exception as exc:
            self.audit.log_activity(
                user_id,
                "logout_failed",
                resource="auth",
                details=_failure_reason(exc),
                device_info=device_info,
                success=False,
            )
            raise
        self.audit.log_activity(
            user_id,
            "logout",
            resource="auth",
            details={"sessions_invalidated": count, "all_sessions": all_sessions},
            device_info=device_info,
        )
        return count

    def get_user_sessions(self, user_id: int) -> List[Session]:
        return self.sessions.list_user_sessions(user_id)

    def revoke_session(
        self, user_id: int, session_id: str, *, device_info: DeviceInfo | None = None
    ) -> None:
        if not self.sessions.revoke_session(user_id, session_id, device_info=device_info):
            raise NotFoundError("Session not found")

    # -- passwords -----------------------------------------------------------

    async def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        *,
        device_info: DeviceInfo | None = None,
    ) -> int:
        """Replace the caller's password and end every one of their sessions.

        Returns the number of sessions invalidated.
        """
        try:
            user = self.store.find_user_by_id(user_id)
            if user is None:
                raise NotFoundError("User not found")
            if not await self._verify(current_password, user.password_hash):
                raise AuthenticationError("Current password is incorrect")
            self._require_strong(new_password)
            if await self._verify(new_password, user.password_hash):
                raise ValidationError("New password must differ from the current password")
            password_hash, password_salt = await self._hash(new_password)
            self.store.update_user_password(
                user_id, password_hash, password_salt, must_change_password=False
            )
            invalidated = self.sessions.invalidate_user_sessions(user_id)
        except Exception as exc:
            self.audit.log_activity(
                user_id,
                "password_change_failed",
                resource="user",
                details=_failure_reason(exc),
                device_info=device_info,
                success=False,
            )
            raise
        self.audit.log_activity(
            user_id,
            "password_changed",
            resource="user",
            details={"sessions_invalidated": invalidated},
            device_info=device_info,
        )
        return invalidated

    async def reset_user_password(
        self,
        user_id: int,
        new_password: str | None = None,
        *,
        reset_by: int | None = None,
        device_info: DeviceInfo | None = None,
    ) -> str:
        """Administrative reset; returns the password that was set.

        A password is generated when none is supplied. The user must change
        it at next login and all of their sessions end.
        """
        try:
            user = self.store.find_user_by_id(user_id)
            if user is None:
                raise NotFoundError("User not found")
            password = new_password or generate_secure_password()
            self._require_strong(password)
            password_hash, password_salt = await self._hash(password)
            self.store.update_user_password(
                user_id,
                password_hash,
                password_salt,
                must_change_password=True,
                reset_lockout=True,
            )
            invalidated = self.sessions.invalidate_user_sessions(user_id)
        except Exception as exc:
            self.audit.log_activity(
                reset_by,
                "password_reset_failed",
                resource="user",
                details={"target_user_id": user_id, **_failure_reason(exc)},
                device_info=device_info,
                success=False,
            )
            raise
        self.audit.log_activity(
            reset_by,
            "password_reset_by_admin",
            resource="user",
            details={"target_user_id": user_id, "sessions_invalidated": invalidated},
            device_info=device_info,
        )
        return password

    # -- user administration -------------------------------------------------

    async def create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: str = Role.MEMBER.value,
        member_id: int | None = None,
        created_by: int | None = None,
        must_change_password: bool = False,
        device_info: DeviceInfo | None = None,
    ) -> User:
        username = (username or "").strip()
        try:
            username_errors = validate_username(username)
            if username_errors:
                raise ValidationError("Invalid username", detail={"errors": username_errors})
            email = normalize_email(email)
            role = self._validate_role(role)
            # Duplicate check precedes hashing; bcrypt is the expensive step
            if self.store.find_user_conflict(username, email) is not None:
                raise ConflictError("Username or email already exists")
            self._require_strong(password)
            password_hash, password_salt = await self._hash(password)
            try:
                user = self.store.insert_user(
                    User(
                        id=None,
                        username=username,
                        email=email,
                        password_hash=password_hash,
                        password_salt=password_salt,
                        role=role,
                        member_id=member_id,
                        must_change_password=must_change_password,
                        password_changed_at=self._now(),
                        created_by=created_by,
                    )
                )
            except ConstraintViolation as exc:
                raise ConflictError("Username or email already exists", detail=exc.detail) from exc
        except Exception as exc:
            self.audit.log_activity(
                created_by,
                "user_creation_failed",
                resource="user",
                details={"username": username, **_failure_reason(exc)},
                device_info=device_info,
                success=False,
            )
            raise
        self.audit.log_activity(
            created_by,
            "user_created",
            resource="user",
            details={"target_user_id": user.id, "username": user.username, "role": user.role},
            device_info=device_info,
        )
        return user

    @staticmethod
    def _validate_role(role: str) -> str:
        try:
            return Role(role).value
        except ValueError:
            raise ValidationError(f"Invalid role: {role}", detail={"field": "role"})

    def _coerce_changes(self, changes: Mapping[str, Any]) -> dict[UserField, Any]:
        coerced: dict[UserField, Any] = {}
        for key, value in changes.items():
            try:
                user_field = UserField(key)
            except ValueError:
                raise ValidationError(
                    f"Field '{key}' cannot be updated", detail={"field": key}
                )
            if user_field is UserField.USERNAME:
                value = (value or "").strip()
                errors = validate_username(value)
                if errors:
                    raise ValidationError("Invalid username", detail={"errors": errors})
            elif user_field is UserField.EMAIL:
                value = normalize_email(value)
            elif user_field is UserField.ROLE:
                value = self._validate_role(value)
            elif user_field is UserField.STATUS:
                try:
                    value = UserStatus(value).value
                except ValueError:
                    raise ValidationError(f"Invalid status: {value}", detail={"field": "status"})
            elif user_field in (UserField.EMAIL_VERIFIED, UserField.MUST_CHANGE_PASSWORD):
                value = bool(value)
            coerced[user_field] = value
        return coerced

    async def update_user(
        self,
        user_id: int,
        changes: Mapping[str, Any],
        *,
        updated_by: int | None = None,
        device_info: DeviceInfo | None = None,
    ) -> User:
        coerced = self._coerce_changes(changes)
        if not coerced:
            raise ValidationError("No valid fields to update")
        if (
            updated_by == user_id
            and coerced.get(UserField.STATUS, UserStatus.ACTIVE.value) != UserStatus.ACTIVE.value
        ):
            raise ValidationError("Cannot deactivate your own account")
        existing = self.store.find_user_by_id(user_id)
        if existing is None:
            raise NotFoundError("User not found")
        username = coerced.get(UserField.USERNAME)
        email = coerced.get(UserField.EMAIL)
        if (username or email) and self.store.find_user_conflict(
            username, email, exclude_user_id=user_id
        ):
            raise ConflictError("Username or email already exists")
        try:
            user = self.store.update_user(user_id, coerced)
        except ConstraintViolation as exc:
            raise ConflictError("Username or email already exists", detail=exc.detail) from exc
        if user is None:
            raise NotFoundError("User not found")

        if (
            coerced.get(UserField.STATUS) is not None
            and user.status != UserStatus.ACTIVE.value
        ):
            self.sessions.invalidate_user_sessions(user_id)
        self.audit.log_activity(
            updated_by,
            "user_updated",
            resource="user",
            details={
                "target_user_id": user_id,
                "fields": sorted(f.value for f in coerced),
            },
            device_info=device_info,
        )
        return user

    async def delete_user(
        self,
        user_id: int,
        *,
        deleted_by: int | None = None,
        device_info: DeviceInfo | None = None,
    ) -> None:
        """Soft-delete: the account turns inactive and every session ends."""
        if deleted_by is not None and deleted_by == user_id:
            raise ValidationError("Cannot delete your own account")
        if self.store.set_user_status(user_id, UserStatus.INACTIVE.value) is None:
            raise NotFoundError("User not found")
        invalidated = self.sessions.invalidate_user_sessions(user_id)
        self.audit.log_activity(
            deleted_by,
            "user_deleted",
            resource="user",
            details={"target_user_id": user_id, "sessions_invalidated": invalidated},
            device_info=device_info,
        )

    def get_user(self, user_id: int) -> UserWithPermissions:
        user = self.store.find_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return UserWithPermissions(
            user=user, permissions=self.store.find_permissions_by_role(user.role)
        )

    def list_users(
        self, *, include_inactive: bool = False, role: str | None = None
    ) -> List[User]:
        return self.store.list_users(include_inactive=include_inactive, role=role)

    def get_user_permissions(self, user_id: int) -> List[Permission]:
        user = self.store.find_user_by_id(user_id)
        if user is None or not user.is_active:
            return []
        return self.store.find_permissions_by_role(user.role)

    def has_permission(self, user_id: int, permission: str) -> bool:
        return any(perm.name == permission for perm in self.get_user_permissions(user_id))

    def needs_setup(self) -> bool:
        """True until at least one active administrator exists."""
        return self.store.count_admins() == 0
