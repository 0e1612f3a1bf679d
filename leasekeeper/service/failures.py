from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from redis.exceptions import RedisError

from leasekeeper.logging import get_logger
from leasekeeper.service.clock import Clock, utcnow
from leasekeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class FailureTracker:
    """Counts invalid-token events per source and locks noisy sources out.

    ``limit`` consecutive failures inside ``window_seconds`` lock the source
    out for ``cooldown_seconds``. A successful validation clears the count.
    Redis keeps the counters shared between workers when configured; the
    in-process table is used otherwise and whenever Redis errors.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        limit: int = 5,
        window_seconds: int = 300,
        cooldown_seconds: int = 900,
        clock: Clock = utcnow,
    ) -> None:
        self.cache = cache
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._now = clock
        self._attempts: Dict[str, Tuple[int, datetime]] = {}  # source -> (count, window_start)
        self._lockouts: Dict[str, datetime] = {}  # source -> locked_until
        self._state_lock = threading.Lock()

    async def lockout_remaining(self, source: Optional[str]) -> int:
        """Seconds until ``source`` may validate again; 0 when not locked out."""
        if not source:
            return 0
        if self.cache:
            try:
                return await self.cache.get_lockout_ttl(source)
            except RedisError as exc:
                logger.warning("failure_tracker_redis_error", error=str(exc))
        now = self._now()
        with self._state_lock:
            locked_until = self._lockouts.get(source)
            if locked_until and locked_until > now:
                return max(1, int((locked_until - now).total_seconds()))
            if locked_until:
                self._lockouts.pop(source, None)
        return 0

    async def record_failure(self, source: Optional[str]) -> int:
        """Count a failure; returns the lockout length when this one triggers it."""
        if not source:
            return 0
        if self.cache:
            try:
                locked, value = await self.cache.record_validation_failure(
                    source,
                    limit=self.limit,
                    window_seconds=int(self.window.total_seconds()),
                    cooldown_seconds=int(self.cooldown.total_seconds()),
                )
                if locked:
                    logger.warning("validation_lockout_triggered", retry_after=value)
                    return value
                return 0
            except RedisError as exc:
                logger.warning("failure_tracker_redis_error", error=str(exc))

        now = self._now()
        with self._state_lock:
            current = self._attempts.get(source)
            window_start = now
            attempts = 1
            if current:
                count, prev_window_start = current
                if now - prev_window_start < self.window:
                    attempts = count + 1
                    window_start = prev_window_start
            self._attempts[source] = (attempts, window_start)
            if attempts >= self.limit:
                self._lockouts[source] = now + self.cooldown
                self._attempts.pop(source, None)
                logger.warning("validation_lockout_triggered", attempts=attempts)
                return int(self.cooldown.total_seconds())
        return 0

    async def clear(self, source: Optional[str]) -> None:
        if not source:
            return
        if self.cache:
            try:
                await self.cache.clear_validation_failures(source)
            except RedisError as exc:
                logger.warning("failure_tracker_redis_error", error=str(exc))
        with self._state_lock:
            self._attempts.pop(source, None)

    def prune(self) -> int:
        """Drop expired in-process windows and lockouts; returns entries removed."""
        now = self._now()
        removed = 0
        with self._state_lock:
            for source, locked_until in list(self._lockouts.items()):
                if locked_until <= now:
                    self._lockouts.pop(source, None)
                    removed += 1
            for source, (_, window_start) in list(self._attempts.items()):
                if now - window_start >= self.window:
                    self._attempts.pop(source, None)
                    removed += 1
        return removed
