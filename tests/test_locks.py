"""
Delivery lock tests - Redis SET NX locking with mocked Redis.
"""
from unittest.mock import AsyncMock, patch

import pytest

from eventdispatch.errors import InvalidStateError, LockTimeoutError
from eventdispatch.utils.locks import delivery_lock, lock_key


class TestDeliveryLock:

    async def test_acquire_and_release(self, mock_redis):
        """Lock is taken with NX and a TTL in milliseconds, then released by compare-and-delete."""
        async with delivery_lock("evt_1", "ep_1", ttl=30, wait=15):
            key, token = mock_redis.set.call_args.args
            assert key == lock_key("evt_1", "ep_1") == "eventdispatch:lock:delivery:evt_1:ep_1"
            assert mock_redis.set.call_args.kwargs == {"nx": True, "px": 30000}

        mock_redis.eval.assert_awaited_once()
        assert mock_redis.eval.call_args.args[1:] == (1, key, token)

    async def test_timeout_raises(self, mock_redis):
        """A lock held elsewhere raises LockTimeoutError once the wait runs out."""
        mock_redis.set = AsyncMock(return_value=None)

        with pytest.raises(LockTimeoutError):
            async with delivery_lock("evt_1", "ep_1", ttl=30, wait=0.2):
                pytest.fail("body should not run without the lock")

        mock_redis.eval.assert_not_called()

    def test_timeout_is_a_typed_state_error(self):
        assert issubclass(LockTimeoutError, InvalidStateError)

    async def test_acquired_after_polling(self, mock_redis):
        mock_redis.set = AsyncMock(side_effect=[None, True])

        entered = False
        async with delivery_lock("evt_1", "ep_1", ttl=30, wait=1):
            entered = True

        assert entered
        assert mock_redis.set.await_count == 2

    async def test_redis_down_proceeds_without_lock(self, mock_redis):
        """Redis failure should not block deliveries."""
        with patch("eventdispatch.utils.cache.get_redis", new=AsyncMock(side_effect=ConnectionError("refused"))):
            entered = False
            async with delivery_lock("evt_1", "ep_1", ttl=30, wait=15):
                entered = True
        assert entered
        mock_redis.eval.assert_not_called()

    async def test_released_when_body_raises(self, mock_redis):
        with pytest.raises(RuntimeError):
            async with delivery_lock("evt_1", "ep_1", ttl=30, wait=15):
                raise RuntimeError("send failed")
        mock_redis.eval.assert_awaited_once()


class TestLockSettings:

    def test_defaults_outlast_one_attempt(self, settings):
        assert settings.webhook_lock_wait_seconds > settings.webhook_timeout_seconds
        assert settings.webhook_lock_ttl_seconds > settings.webhook_timeout_seconds

    def test_wait_shorter_than_attempt_rejected(self):
        from pydantic import ValidationError as PydanticValidationError

        from eventdispatch.config import Settings

        with pytest.raises(PydanticValidationError):
            Settings(webhook_timeout_seconds=10.0, webhook_lock_wait_seconds=5.0)
