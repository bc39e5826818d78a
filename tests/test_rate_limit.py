from datetime import datetime, timedelta, timezone

import fakeredis.aioredis
import pytest

from app.utils.rate_limit import SlidingWindowLimiter

T0 = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_window_slides():
    limiter = SlidingWindowLimiter(fakeredis.aioredis.FakeRedis(), limit=3, window_seconds=60)

    results = [await limiter.hit("src:1.2.3.4", T0 + timedelta(seconds=s)) for s in (0, 10, 20, 30)]
    assert results == [True, True, True, False]

    # By 95 s every earlier hit, rejected ones included, has left the window.
    assert await limiter.hit("src:1.2.3.4", T0 + timedelta(seconds=95)) is True


@pytest.mark.asyncio
async def test_identities_are_independent():
    limiter = SlidingWindowLimiter(fakeredis.aioredis.FakeRedis(), limit=1)
    assert await limiter.hit("src:a", T0)
    assert await limiter.hit("src:b", T0)
    assert not await limiter.hit("src:a", T0)
