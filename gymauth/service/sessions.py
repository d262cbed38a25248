from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from gymauth.config import Settings
from gymauth.logging import get_logger
from gymauth.service.audit import AuditLogger
from gymauth.service.passwords import (
    generate_csrf_token,
    generate_secure_token,
    generate_session_id,
)
from gymauth.service.tokens import IssuedToken, TokenCodec
from gymauth.storage.models import DeviceInfo, Session, User

logger = get_logger(__name__)


@dataclass
class CreatedSession:
    session: Session
    access_token: IssuedToken
    refresh_token: IssuedToken


@dataclass
class SessionView:
    session: Session
    user: User


class SessionManager:
    """Server-side session lifecycle on top of the auth store."""

    def __init__(
        self,
        store,
        codec: TokenCodec,
        audit: AuditLogger,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.audit = audit
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    def create_session(self, user: User, device_info: DeviceInfo | None = None) -> CreatedSession:
        session = Session.new(
            session_id=generate_session_id(),
            user_id=user.id,
            session_token=generate_secure_token(),
            ttl_minutes=self.settings.session_ttl_minutes,
            device_info=device_info,
            csrf_token=generate_csrf_token(),
            now=self.now(),
        )
        access = self.codec.create_access_token(user, session.id)
        refresh = self.codec.create_refresh_token(user, session.id)
        session.refresh_token = refresh.token
        stored = self.store.insert_session(session)
        logger.info("session_created", user_id=user.id, session_id=stored.id)
        return CreatedSession(session=stored, access_token=access, refresh_token=refresh)

    def _resolve(self, session: Optional[Session]) -> Optional[SessionView]:
        now = self.now()
        if session is None or not session.is_valid(now):
            return None
        user = self.store.find_user_by_id(session.user_id)
        if user is None:
            return None
        self.store.touch_session(session.id, now)
        session.last_used_at = now
        return SessionView(session=session, user=user)

    def validate_session(self, session_token: str) -> Optional[SessionView]:
        """Look up an active, unexpired session by its opaque token.

        A miss is an ordinary outcome and returns None.
        """
        if not session_token:
            return None
        return self._resolve(self.store.find_session_by_token(session_token))

    def validate_session_id(self, session_id: str) -> Optional[SessionView]:
        if not session_id:
            return None
        return self._resolve(self.store.find_session_by_id(session_id))

    def revoke_session(
        self, user_id: int, session_id: str, *, device_info: DeviceInfo | None = None
    ) -> bool:
        revoked = self.store.deactivate_session(session_id, user_id=user_id)
        if revoked:
            self.audit.log_activity(
                user_id,
                "session_revoked",
                resource="session",
                details={"session_id": session_id},
                device_info=device_info,
            )
        return revoked

    def logout(
        self, session_token: str, user_id: int | None = None, *, all_sessions: bool = False
    ) -> int:
        """Deactivate a session; repeated calls are harmless and return 0."""
        if all_sessions and user_id is not None:
            return self.store.deactivate_user_sessions(user_id)
        if not session_token:
            return 0
        return self.store.deactivate_session_by_token(session_token)

    def invalidate_user_sessions(self, user_id: int) -> int:
        count = self.store.deactivate_user_sessions(user_id)
        logger.info("user_sessions_invalidated", user_id=user_id, count=count)
        return count

    def list_user_sessions(self, user_id: int) -> List[Session]:
        return self.store.list_user_sessions(user_id, self.now())

    def cleanup_expired_sessions(self) -> int:
        removed = self.store.delete_expired_sessions(self.now())
        if removed:
            logger.info("expired_sessions_removed", count=removed)
        return removed


class SessionCleanupTask:
    """Periodically purges expired and inactive sessions.

    Owned by the application lifespan: ``start()`` on startup and ``stop()``
    on shutdown. ``sleep`` is injectable so tests can drive iterations.
    """

    def __init__(
        self,
        sessions: SessionManager,
        interval_seconds: float,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.sessions = sessions
        self.interval_seconds = interval_seconds
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        removed = await asyncio.to_thread(self.sessions.cleanup_expired_sessions)
        self.runs += 1
        return removed

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("session_cleanup_failed", error=str(exc))
                await self._sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("session_cleanup_cancelled")

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._run())
        logger.info("session_cleanup_started", interval_seconds=self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
