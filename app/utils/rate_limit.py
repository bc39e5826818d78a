"""Redis sliding-window limiter for the inbound webhook."""

from __future__ import annotations

import math
from datetime import datetime
from uuid import uuid4

import redis.asyncio as aioredis


class SlidingWindowLimiter:
    """Allow at most ``limit`` hits per identity in any rolling ``window_seconds``.

    State lives in Redis (one sorted set per identity), so every API replica
    shares the same counters.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        limit: int,
        window_seconds: int = 60,
        prefix: str = "rl:webhook:",
    ):
        self.redis = redis
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    async def hit(self, identity: str, now: datetime) -> bool:
        """Record one request; ``False`` when *identity* is over the limit."""
        key = f"{self.prefix}{identity}"
        now_ms = math.floor(now.timestamp() * 1000)
        window_start = now_ms - self.window_seconds * 1000
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zadd(key, {f"{now_ms}:{uuid4().hex}": now_ms})
            pipe.zcard(key)
            pipe.expire(key, self.window_seconds)
            _, _, count, _ = await pipe.execute()
        return count <= self.limit
