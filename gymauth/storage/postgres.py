from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gymauth.logging import get_logger
from gymauth.storage.errors import ConstraintViolation, StoreUnavailable
from gymauth.storage.models import (
    USER_UPDATE_COLUMNS,
    ActivityLogEntry,
    Permission,
    Role,
    SecurityEvent,
    Session,
    Severity,
    User,
    UserField,
    UserStatus,
)

_REQUIRED_TABLES = (
    "users",
    "user_sessions",
    "permissions",
    "role_permissions",
    "activity_log",
    "security_events",
)


class PostgresStore:
    """Postgres-backed auth store.

    Statements that must not race (the failed-login counter, session
    deactivation) are single ``UPDATE ... RETURNING`` round trips.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise StoreUnavailable(
                "Missing required Postgres tables: {}. Run scripts/migrate.py to install the schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            password_salt=row.get("password_salt") or "",
            role=row.get("role", Role.MEMBER.value),
            status=row.get("status", UserStatus.ACTIVE.value),
            member_id=row.get("member_id"),
            email_verified=bool(row.get("email_verified", False)),
            must_change_password=bool(row.get("must_change_password", False)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            password_changed_at=row.get("password_changed_at"),
            created_by=row.get("created_by"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=int(row["user_id"]),
            session_token=row["session_token"],
            expires_at=row["expires_at"],
            refresh_token=row.get("refresh_token"),
            csrf_token=row.get("csrf_token"),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at") or row["created_at"],
        )

    # -- users ---------------------------------------------------------------

    def find_user_by_username_or_email(
        self, identifier: str, *, active_only: bool = True
    ) -> Optional[User]:
        if not identifier:
            return None
        query = "SELECT * FROM users WHERE (username = %s OR lower(email) = lower(%s))"
        if active_only:
            query += " AND status = 'active'"
        with self._connect() as conn:
            row = conn.execute(query + " LIMIT 1", (identifier, identifier)).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_id(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_conflict(
        self, username: str | None, email: str | None, *, exclude_user_id: int | None = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM users
                WHERE (username = %s OR lower(email) = lower(%s))
                  AND (%s::int IS NULL OR id <> %s)
                LIMIT 1
                """,
                (username, email, exclude_user_id, exclude_user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def insert_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (
                        username, email, password_hash, password_salt, role, status,
                        member_id, email_verified, must_change_password, created_by
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user.username,
                        user.email,
                        user.password_hash,
                        user.password_salt,
                        user.role,
                        user.status,
                        user.member_id,
                        user.email_verified,
                        user.must_change_password,
                        user.created_by,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "username or email already exists", {"fields": ["username", "email"]}
            )
        return self._user_from_row(row)

    def list_users(
        self, *, include_inactive: bool = False, role: str | None = None
    ) -> List[User]:
        clauses: List[str] = []
        params: List[Any] = []
        if not include_inactive:
            clauses.append("status = 'active'")
        if role:
            clauses.append("role = %s")
            params.append(role)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM users {where} ORDER BY created_at DESC", params
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def count_admins(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS total FROM users WHERE role = 'admin' AND status = 'active'"
            ).fetchone()
        return int(row["total"]) if row else 0

    def increment_failed_login(
        self, user_id: int, *, max_attempts: int, lockout_until: datetime
    ) -> Tuple[int, Optional[datetime]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = failed_login_attempts + 1,
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %s
                RETURNING failed_login_attempts, locked_until
                """,
                (max_attempts, lockout_until, user_id),
            ).fetchone()
        if not row:
            return 0, None
        return int(row["failed_login_attempts"]), row.get("locked_until")

    def clear_expired_lockout(self, user_id: int, *, locked_until: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = 0,
                    locked_until = NULL,
                    updated_at = now()
                WHERE id = %s AND locked_until = %s
                RETURNING id
                """,
                (user_id, locked_until),
            ).fetchone()
        return row is not None

    def update_user_login_state(
        self,
        user_id: int,
        *,
        failed_login_attempts: int,
        locked_until: datetime | None,
        last_login_at: datetime | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = %s,
                    locked_until = %s,
                    last_login_at = COALESCE(%s, last_login_at),
                    updated_at = now()
                WHERE id = %s
                """,
                (failed_login_attempts, locked_until, last_login_at, user_id),
            )

    def update_user_password(
        self,
        user_id: int,
        password_hash: str,
        password_salt: str,
        *,
        must_change_password: bool = False,
        reset_lockout: bool = False,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET password_hash = %s,
                    password_salt = %s,
                    must_change_password = %s,
                    password_changed_at = now(),
                    failed_login_attempts = CASE WHEN %s THEN 0 ELSE failed_login_attempts END,
                    locked_until = CASE WHEN %s THEN NULL ELSE locked_until END,
                    updated_at = now()
                WHERE id = %s
                RETURNING id
                """,
                (
                    password_hash,
                    password_salt,
                    must_change_password,
                    reset_lockout,
                    reset_lockout,
                    user_id,
                ),
            ).fetchone()
        return row is not None

    def set_user_status(self, user_id: int, status: str) -> Optional[User]:
        return self.update_user(user_id, {UserField.STATUS: status})

    def update_user(self, user_id: int, changes: Mapping[UserField, Any]) -> Optional[User]:
        if not changes:
            return self.find_user_by_id(user_id)
        assignments = []
        params: List[Any] = []
        for key, value in changes.items():
            if not isinstance(key, UserField) or key not in USER_UPDATE_COLUMNS:
                raise ValueError(f"field {key!r} cannot be updated")
            assignments.append(
                sql.SQL("{} = %s").format(sql.Identifier(USER_UPDATE_COLUMNS[key]))
            )
            params.append(value)
        query = sql.SQL(
            "UPDATE users SET {assignments}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(assignments=sql.SQL(", ").join(assignments))
        try:
            with self._connect() as conn:
                row = conn.execute(query, (*params, user_id)).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "username or email already exists", {"fields": ["username", "email"]}
            )
        return self._user_from_row(row) if row else None

    # -- sessions ------------------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_sessions (
                        id, user_id, session_token, refresh_token, csrf_token,
                        user_agent, ip_address, is_active, created_at, last_used_at, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.session_token,
                        session.refresh_token,
                        session.csrf_token,
                        session.user_agent,
                        session.ip_address,
                        session.is_active,
                        session.created_at,
                        session.last_used_at,
                        session.expires_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.id})
        return self._session_from_row(row)

    def find_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_sessions WHERE session_token = %s", (session_token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_id(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, last_used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_sessions SET last_used_at = %s WHERE id = %s",
                (last_used_at, session_id),
            )

    def deactivate_session(self, session_id: str, *, user_id: int | None = None) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_sessions SET is_active = FALSE
                WHERE id = %s AND is_active AND (%s::int IS NULL OR user_id = %s)
                RETURNING id
                """,
                (session_id, user_id, user_id),
            ).fetchone()
        return row is not None

    def deactivate_session_by_token(self, session_token: str) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_sessions SET is_active = FALSE
                WHERE session_token = %s AND is_active
                RETURNING id
                """,
                (session_token,),
            ).fetchall()
        return len(rows)

    def deactivate_user_sessions(self, user_id: int) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "UPDATE user_sessions SET is_active = FALSE WHERE user_id = %s AND is_active RETURNING id",
                (user_id,),
            ).fetchall()
        return len(rows)

    def list_user_sessions(self, user_id: int, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY last_used_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM user_sessions WHERE expires_at <= %s OR NOT is_active",
                (now,),
            )
            return cursor.rowcount or 0

    # -- permissions ---------------------------------------------------------

    def find_permissions_by_role(self, role: str) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.id, p.name, p.description, p.category
                FROM permissions p
                JOIN role_permissions rp ON rp.permission_id = p.id
                WHERE rp.role = %s AND rp.granted
                ORDER BY p.category, p.name
                """,
                (role,),
            ).fetchall()
        return [
            Permission(
                id=row["id"],
                name=row["name"],
                description=row.get("description") or "",
                category=row.get("category") or "",
            )
            for row in rows
        ]

    # -- audit ---------------------------------------------------------------

    def insert_activity_log(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO activity_log (
                    user_id, action, resource, details, ip_address, user_agent, success, severity,
                    created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    entry.user_id,
                    entry.action,
                    entry.resource,
                    json.dumps(entry.details, default=str),
                    entry.ip_address,
                    entry.user_agent,
                    entry.success,
                    entry.severity,
                    entry.created_at,
                ),
            ).fetchone()
        entry.id = row["id"] if row else None
        return entry

    def insert_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO security_events (
                    event_type, severity, user_id, details, ip_address, user_agent, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    event.event_type,
                    event.severity,
                    event.user_id,
                    json.dumps(event.details, default=str),
                    event.ip_address,
                    event.user_agent,
                    event.created_at,
                ),
            ).fetchone()
        event.id = row["id"] if row else None
        return event

    def list_activity_log(
        self, *, user_id: int | None = None, limit: int = 100
    ) -> List[ActivityLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM activity_log
                WHERE %s::int IS NULL OR user_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (user_id, user_id, limit),
            ).fetchall()
        return [
            ActivityLogEntry(
                id=row["id"],
                user_id=row.get("user_id"),
                action=row["action"],
                resource=row.get("resource"),
                details=row.get("details") or {},
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                success=bool(row.get("success", True)),
                severity=row.get("severity") or Severity.INFO.value,
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def list_security_events(
        self, *, event_type: str | None = None, limit: int = 100
    ) -> List[SecurityEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM security_events
                WHERE %s::text IS NULL OR event_type = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (event_type, event_type, limit),
            ).fetchall()
        return [
            SecurityEvent(
                id=row["id"],
                event_type=row["event_type"],
                severity=row["severity"],
                user_id=row.get("user_id"),
                details=row.get("details") or {},
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
