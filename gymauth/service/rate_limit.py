from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from gymauth.logging import get_logger
from gymauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class FixedWindowRateLimiter:
    """Fixed-window request counter keyed by an opaque subject string.

    Counts live in Redis when a cache is configured, otherwise in a
    process-local table guarded by an asyncio lock.
    """

    def __init__(
        self,
        cache: RedisCache | SyncRedisCache | None,
        *,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                window_seconds=window_seconds,
                message=f"Invalid rate limit window; defaulting to {_DEFAULT_WINDOW_SECONDS} seconds",
            )
            window_seconds = _DEFAULT_WINDOW_SECONDS
        self.cache = cache
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._local_windows: Dict[str, Tuple[float, int]] = {}
        self._local_lock = asyncio.Lock()

    async def hit(self, key: str) -> RateLimitDecision:
        if self.limit <= 0:
            return RateLimitDecision(True, self.limit, self.limit, 0)
        if self.cache is not None:
            count, seconds_left = await self.cache.incr_window(key, self.window_seconds)
        else:
            count, seconds_left = await self._hit_local(key)
        allowed = count <= self.limit
        return RateLimitDecision(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            retry_after=0 if allowed else seconds_left,
        )

    async def _hit_local(self, key: str) -> Tuple[int, int]:
        now = self._clock()
        async with self._local_lock:
            started, count = self._local_windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._local_windows[key] = (started, count)
            if len(self._local_windows) > 10_000:
                self._evict_stale(now)
        seconds_left = max(1, math.ceil(started + self.window_seconds - now))
        return count, seconds_left

    def _evict_stale(self, now: float) -> None:
        stale = [
            key
            for key, (started, _) in self._local_windows.items()
            if now - started >= self.window_seconds
        ]
        for key in stale:
            del self._local_windows[key]

    def reset(self, key: Optional[str] = None) -> None:
        """Forget local counters (all of them, or one subject)."""
        if key is None:
            self._local_windows.clear()
        else:
            self._local_windows.pop(key, None)
