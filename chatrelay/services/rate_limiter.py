"""
Per-owner sliding-window rate limiter on Redis sorted sets.

Each allowed request adds one member scored by its arrival time; members older
than the window are trimmed before counting. When Redis is unreachable the
limiter fails open so the API stays usable.
"""
import time
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError

from chatrelay.config import settings
from chatrelay.logging_config import get_logger

logger = get_logger(component="rate_limiter")

KEY_PREFIX = "chatrelay:ratelimit:"


class RateLimiter:
    def __init__(self, redis_url: str | None = None, limit: int | None = None, window: int | None = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.limit = limit or settings.RATE_LIMIT_REQUESTS
        self.window = window or settings.RATE_LIMIT_WINDOW_SECONDS
        self._redis: redis.Redis | None = None

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    @staticmethod
    def _key(owner_id: str) -> str:
        return f"{KEY_PREFIX}{owner_id}"

    async def is_allowed(self, owner_id: str) -> tuple[bool, int]:
        """
        Count this request against the owner's window.

        Returns:
            (allowed, retry_after_seconds); retry_after is 0 when allowed
        """
        r = self._client()
        key = self._key(owner_id)
        now = time.time()

        try:
            async with r.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, 0, now - self.window)
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                _, count, oldest = await pipe.execute()

            if count >= self.limit:
                retry_after = int(self.window - (now - oldest[0][1])) if oldest else self.window
                return False, max(retry_after, 1)

            async with r.pipeline(transaction=True) as pipe:
                # unique member so concurrent requests in the same instant all count
                pipe.zadd(key, {f"{now}:{uuid4().hex[:8]}": now})
                pipe.expire(key, self.window)
                await pipe.execute()
            return True, 0

        except (RedisError, OSError) as e:
            logger.warning("rate_limiter_unavailable", owner_id=owner_id, error=str(e))
            return True, 0

    async def get_current_count(self, owner_id: str) -> int:
        r = self._client()
        key = self._key(owner_id)
        try:
            await r.zremrangebyscore(key, 0, time.time() - self.window)
            return await r.zcard(key)
        except (RedisError, OSError):
            return 0

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


rate_limiter = RateLimiter()
