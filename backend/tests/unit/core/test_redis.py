"""Tests for Redis connection validation with retry and channel naming."""

from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chat_core.core.redis import ChannelKeys


@pytest.fixture(autouse=True)
def reset_redis_after_test():
    """Reset Redis state after each test to prevent pollution."""
    yield
    from chat_core.core.redis import _reset_redis

    _reset_redis()


class TestRedisInitWithRetry:
    """Test Redis initialization with connection validation and retry."""

    def test_successful_ping_on_first_try(self):
        mock_redis = MagicMock()
        mock_redis.ping.return_value = True

        with (
            patch("chat_core.core.redis.Redis", return_value=mock_redis),
            patch("chat_core.core.redis.ConnectionPool"),
        ):
            from chat_core.core.redis import _reset_redis, get_redis, init_redis

            _reset_redis()
            client = init_redis()

            mock_redis.ping.assert_called_once()
            assert client is mock_redis
            assert get_redis() is mock_redis

    def test_success_on_second_retry(self):
        mock_redis = MagicMock()
        mock_redis.ping.side_effect = [RedisConnectionError("Connection refused"), True]

        with (
            patch("chat_core.core.redis.Redis", return_value=mock_redis),
            patch("chat_core.core.redis.ConnectionPool"),
            patch("chat_core.core.redis.time.sleep") as mock_sleep,
            patch("chat_core.core.redis.logger") as mock_logger,
        ):
            from chat_core.core.redis import _reset_redis, init_redis

            _reset_redis()
            init_redis()

            assert mock_redis.ping.call_count == 2
            mock_sleep.assert_called_once_with(1)
            mock_logger.warning.assert_called_once()

    def test_all_retries_fail_raises(self):
        mock_redis = MagicMock()
        mock_redis.ping.side_effect = RedisConnectionError("Connection refused")

        with (
            patch("chat_core.core.redis.Redis", return_value=mock_redis),
            patch("chat_core.core.redis.ConnectionPool"),
            patch("chat_core.core.redis.time.sleep") as mock_sleep,
        ):
            from chat_core.core.redis import _reset_redis, init_redis

            _reset_redis()
            with pytest.raises(RuntimeError, match="after 3 attempts"):
                init_redis()

            assert mock_redis.ping.call_count == 3
            assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2]

    def test_get_redis_before_init_raises(self):
        from chat_core.core.redis import _reset_redis, get_redis

        _reset_redis()
        with pytest.raises(RuntimeError, match="not initialized"):
            get_redis()

    def test_close_releases_pool(self):
        mock_redis = MagicMock()
        with (
            patch("chat_core.core.redis.Redis", return_value=mock_redis),
            patch("chat_core.core.redis.ConnectionPool") as mock_pool_cls,
        ):
            from chat_core.core.redis import _reset_redis, close_redis, get_redis, init_redis

            _reset_redis()
            init_redis()
            close_redis()

            mock_redis.close.assert_called_once()
            mock_pool_cls.from_url.return_value.disconnect.assert_called_once()
            with pytest.raises(RuntimeError):
                get_redis()


class TestChannelKeys:
    def test_user_and_conversation_channels(self):
        keys = ChannelKeys("chat")
        assert keys.user("user-a") == "chat:user:user-a"
        assert keys.conversation("conv-1") == "chat:conversation:conv-1"
