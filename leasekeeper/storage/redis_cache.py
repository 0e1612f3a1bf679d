from __future__ import annotations

import hashlib

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for failed-validation counters shared across workers."""

    # Atomic check-and-increment with lockout trigger. The attempt window is
    # fixed from the first failure; the lockout key outlives the counter.
    _FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, redis.call('TTL', KEYS[1])}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
    redis.call('EXPIRE', KEYS[2], ARGV[2])
end

if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
    redis.call('DEL', KEYS[2])
    return {1, tonumber(ARGV[3])}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._record_failure = self.client.register_script(self._FAILURE_SCRIPT)

    @staticmethod
    def _source_key(source: str) -> str:
        # Addresses are hashed so raw client IPs never appear in key listings.
        return hashlib.sha256(source.encode("utf-8")).hexdigest()[:32]

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_lockout_ttl(self, source: str) -> int:
        """Seconds left on the source's lockout, 0 when it is not locked out."""
        ttl = await self.client.ttl(f"lease:lockout:{self._source_key(source)}")
        return max(0, int(ttl))

    async def record_validation_failure(
        self,
        source: str,
        *,
        limit: int,
        window_seconds: int,
        cooldown_seconds: int,
    ) -> tuple[bool, int]:
        """Atomically count a failed validation and trigger the lockout.

        Returns:
            ``(locked_out, value)`` where ``value`` is the remaining lockout
            in seconds when locked out, else the attempt count in the window.
        """
        key = self._source_key(source)
        result = await self._record_failure(
            keys=[f"lease:lockout:{key}", f"lease:failures:{key}"],
            args=[limit, window_seconds, cooldown_seconds],
        )
        return (bool(result[0]), int(result[1]))

    async def clear_validation_failures(self, source: str) -> None:
        await self.client.delete(f"lease:failures:{self._source_key(source)}")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
