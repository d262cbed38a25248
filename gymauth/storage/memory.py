from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from gymauth.logging import get_logger
from gymauth.storage.errors import ConstraintViolation
from gymauth.storage.models import (
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLE_GRANTS,
    USER_UPDATE_COLUMNS,
    ActivityLogEntry,
    Permission,
    Role,
    SecurityEvent,
    Session,
    User,
    UserField,
    UserStatus,
    utcnow,
)

_USER_DATETIME_FIELDS = (
    "locked_until",
    "last_login_at",
    "password_changed_at",
    "created_at",
    "updated_at",
)
_SESSION_DATETIME_FIELDS = ("expires_at", "created_at", "last_used_at")


class MemoryStore:
    """In-process auth store used for tests and local development.

    Every operation holds ``_data_lock`` so read-modify-write sequences (the
    failed-login counter in particular) behave like single SQL statements.
    Records handed out are copies; callers never mutate stored state.
    When ``fs_root`` is given, users and sessions are snapshotted to
    ``<fs_root>/state/auth_store.json`` after every write.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_grants: Dict[str, List[str]] = {}
        self.activity_log: List[ActivityLogEntry] = []
        self.security_events: List[SecurityEvent] = []
        self._user_id_seq = 1
        self._log_id_seq = 1
        # RLock so helpers may re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None

        self._seed_permissions()
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _seed_permissions(self) -> None:
        for idx, perm in enumerate(DEFAULT_PERMISSIONS, start=1):
            self.permissions[perm.name] = replace(perm, id=idx)
        self.role_grants = {role: list(names) for role, names in DEFAULT_ROLE_GRANTS.items()}

    # -- users ---------------------------------------------------------------

    def find_user_by_username_or_email(
        self, identifier: str, *, active_only: bool = True
    ) -> Optional[User]:
        """Username matches exactly; email matches case-insensitively."""
        if not identifier:
            return None
        lowered = identifier.lower()
        with self._data_lock:
            for user in self.users.values():
                if active_only and user.status != UserStatus.ACTIVE.value:
                    continue
                if user.username == identifier or user.email.lower() == lowered:
                    return replace(user)
            return None

    def find_user_by_id(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def find_user_conflict(
        self, username: str | None, email: str | None, *, exclude_user_id: int | None = None
    ) -> Optional[User]:
        lowered = email.lower() if email else None
        with self._data_lock:
            for user in self.users.values():
                if user.id == exclude_user_id:
                    continue
                if (username and user.username == username) or (
                    lowered and user.email.lower() == lowered
                ):
                    return replace(user)
            return None

    def insert_user(self, user: User) -> User:
        with self._data_lock:
            if self.find_user_conflict(user.username, user.email) is not None:
                raise ConstraintViolation(
                    "username or email already exists", {"fields": ["username", "email"]}
                )
            now = utcnow()
            stored = replace(user, id=self._user_id_seq, created_at=now, updated_at=now)
            self._user_id_seq += 1
            self.users[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def list_users(
        self, *, include_inactive: bool = False, role: str | None = None
    ) -> List[User]:
        with self._data_lock:
            results = [
                replace(u)
                for u in self.users.values()
                if (include_inactive or u.status == UserStatus.ACTIVE.value)
                and (role is None or u.role == role)
            ]
        return sorted(results, key=lambda u: u.created_at, reverse=True)

    def count_admins(self) -> int:
        with self._data_lock:
            return sum(
                1
                for u in self.users.values()
                if u.role == Role.ADMIN.value and u.status == UserStatus.ACTIVE.value
            )

    def increment_failed_login(
        self, user_id: int, *, max_attempts: int, lockout_until: datetime
    ) -> Tuple[int, Optional[datetime]]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0, None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts:
                user.locked_until = lockout_until
            user.updated_at = utcnow()
            self._persist_state()
            return user.failed_login_attempts, user.locked_until

    def clear_expired_lockout(self, user_id: int, *, locked_until: datetime) -> bool:
        """Zero the counter only while ``locked_until`` is still the stored lock."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.locked_until != locked_until:
                return False
            user.failed_login_attempts = 0
            user.locked_until = None
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def update_user_login_state(
        self,
        user_id: int,
        *,
        failed_login_attempts: int,
        locked_until: datetime | None,
        last_login_at: datetime | None = None,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_attempts = failed_login_attempts
            user.locked_until = locked_until
            if last_login_at is not None:
                user.last_login_at = last_login_at
            user.updated_at = utcnow()
            self._persist_state()

    def update_user_password(
        self,
        user_id: int,
        password_hash: str,
        password_salt: str,
        *,
        must_change_password: bool = False,
        reset_lockout: bool = False,
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            now = utcnow()
            user.password_hash = password_hash
            user.password_salt = password_salt
            user.must_change_password = must_change_password
            user.password_changed_at = now
            user.updated_at = now
            if reset_lockout:
                user.failed_login_attempts = 0
                user.locked_until = None
            self._persist_state()
            return True

    def set_user_status(self, user_id: int, status: str) -> Optional[User]:
        return self.update_user(user_id, {UserField.STATUS: status})

    def update_user(self, user_id: int, changes: Mapping[UserField, Any]) -> Optional[User]:
        for key in changes:
            if not isinstance(key, UserField) or key not in USER_UPDATE_COLUMNS:
                raise ValueError(f"field {key!r} cannot be updated")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            username = changes.get(UserField.USERNAME)
            email = changes.get(UserField.EMAIL)
            if (username or email) and self.find_user_conflict(
                username, email, exclude_user_id=user_id
            ):
                raise ConstraintViolation(
                    "username or email already exists", {"fields": ["username", "email"]}
                )
            for key, value in changes.items():
                setattr(user, USER_UPDATE_COLUMNS[key], value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    # -- sessions ------------------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions or any(
                s.session_token == session.session_token for s in self.sessions.values()
            ):
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def find_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.session_token == session_token:
                    return replace(sess)
            return None

    def find_session_by_id(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def touch_session(self, session_id: str, last_used_at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.last_used_at = last_used_at

    def deactivate_session(self, session_id: str, *, user_id: int | None = None) -> bool:
        """Deactivate one session; with ``user_id`` only if that user owns it."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            if user_id is not None and sess.user_id != user_id:
                return False
            sess.is_active = False
            self._persist_state()
            return True

    def deactivate_session_by_token(self, session_token: str) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.session_token == session_token and sess.is_active:
                    sess.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def deactivate_user_sessions(self, user_id: int) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.is_active:
                    sess.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def list_user_sessions(self, user_id: int, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_valid(now)
            ]
        return sorted(active, key=lambda s: s.last_used_at, reverse=True)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.expires_at <= now or not sess.is_active
            ]
            for sid in stale:
                del self.sessions[sid]
            if stale:
                self._persist_state()
            return len(stale)

    # -- permissions ---------------------------------------------------------

    def find_permissions_by_role(self, role: str) -> List[Permission]:
        with self._data_lock:
            granted = [
                replace(self.permissions[name])
                for name in self.role_grants.get(role, [])
                if name in self.permissions
            ]
        return sorted(granted, key=lambda p: (p.category, p.name))

    # -- audit ---------------------------------------------------------------

    def insert_activity_log(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        with self._data_lock:
            stored = replace(entry, id=self._log_id_seq)
            self._log_id_seq += 1
            self.activity_log.append(stored)
            return stored

    def insert_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            stored = replace(event, id=self._log_id_seq)
            self._log_id_seq += 1
            self.security_events.append(stored)
            return stored

    def list_activity_log(
        self, *, user_id: int | None = None, limit: int = 100
    ) -> List[ActivityLogEntry]:
        with self._data_lock:
            rows = [e for e in self.activity_log if user_id is None or e.user_id == user_id]
        return list(reversed(rows))[:limit]

    def list_security_events(
        self, *, event_type: str | None = None, limit: int = 100
    ) -> List[SecurityEvent]:
        with self._data_lock:
            rows = [
                e for e in self.security_events if event_type is None or e.event_type == event_type
            ]
        return list(reversed(rows))[:limit]

    # -- snapshot ------------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize(record: Any, datetime_fields: Tuple[str, ...]) -> dict:
        data = asdict(record)
        for name in datetime_fields:
            if data.get(name) is not None:
                data[name] = data[name].isoformat()
        return data

    @staticmethod
    def _deserialize_datetimes(data: dict, datetime_fields: Tuple[str, ...]) -> dict:
        for name in datetime_fields:
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        return data

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "user_id_seq": self._user_id_seq,
            "users": [self._serialize(u, _USER_DATETIME_FIELDS) for u in self.users.values()],
            "sessions": [
                self._serialize(s, _SESSION_DATETIME_FIELDS) for s in self.sessions.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            int(u["id"]): User(**self._deserialize_datetimes(u, _USER_DATETIME_FIELDS))
            for u in data.get("users", [])
        }
        self.sessions = {
            s["id"]: Session(**self._deserialize_datetimes(s, _SESSION_DATETIME_FIELDS))
            for s in data.get("sessions", [])
        }
        self._user_id_seq = int(data.get("user_id_seq", len(self.users) + 1))
        self.logger.info(
            "memory_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True
