"""
Outbound rate limiter tests - sliding window over a mocked Redis pipeline.
"""
from unittest.mock import AsyncMock, MagicMock, patch

from eventdispatch.utils.rate_limiter import RateLimiter, check_rate_limit


def _pipeline(mock_redis, count):
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[0, 1, count, True])
    mock_redis.pipeline = MagicMock(return_value=pipe)
    return pipe


class TestCheckRateLimit:

    async def test_under_limit_allowed(self, mock_redis):
        pipe = _pipeline(mock_redis, 3)

        allowed, retry_after = await check_rate_limit("endpoint:ep_1", limit=5, window=60)

        assert allowed is True
        assert retry_after is None
        assert pipe.zremrangebyscore.call_args.args[0] == "eventdispatch:ratelimit:endpoint:ep_1"
        pipe.expire.assert_called_once_with("eventdispatch:ratelimit:endpoint:ep_1", 61)

    async def test_at_limit_allowed(self, mock_redis):
        _pipeline(mock_redis, 5)
        allowed, _ = await check_rate_limit("endpoint:ep_1", limit=5, window=60)
        assert allowed is True

    async def test_over_limit_denied(self, mock_redis):
        _pipeline(mock_redis, 6)

        allowed, retry_after = await check_rate_limit("endpoint:ep_1", limit=5, window=60)

        assert allowed is False
        assert retry_after == 60

    async def test_members_are_unique(self, mock_redis):
        """Two calls in the same instant must both count."""
        pipe = _pipeline(mock_redis, 1)

        await check_rate_limit("k", limit=5)
        await check_rate_limit("k", limit=5)

        first = list(pipe.zadd.call_args_list[0].args[1])[0]
        second = list(pipe.zadd.call_args_list[1].args[1])[0]
        assert first != second

    async def test_redis_failure_allows(self):
        """Redis failure should fail-open."""
        with patch("eventdispatch.utils.cache.get_redis", new=AsyncMock(side_effect=ConnectionError("refused"))):
            allowed, retry_after = await check_rate_limit("k", limit=1)
        assert allowed is True
        assert retry_after is None


class TestRateLimiter:

    async def test_check_and_consume(self, mock_redis):
        _pipeline(mock_redis, 2)
        limiter = RateLimiter()
        assert await limiter.check_and_consume("endpoint:ep_1", 1, 60) is False
        assert await limiter.check_and_consume("endpoint:ep_1", 2, 60) is True
