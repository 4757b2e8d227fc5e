"""Tests for notifier implementations."""

import json
from unittest.mock import MagicMock, patch

from chat_core.core.notifier import NullNotifier, RedisNotifier, get_notifier
from chat_core.core.redis import ChannelKeys
from chat_core.models.notification import NotificationEvent, NotificationEventType


def _event() -> NotificationEvent:
    return NotificationEvent(
        event=NotificationEventType.MESSAGE_NEW,
        entity_ids={"conversation_id": "conv-1", "message_id": "msg-1"},
        actor_id="user-a",
        payload={"message": {"content": "Hello"}},
    )


class TestRedisNotifier:
    def test_notify_user_publishes_json_on_user_channel(self):
        redis = MagicMock()
        redis.publish.return_value = 1
        notifier = RedisNotifier(redis=redis, channels=ChannelKeys("chat"))

        notifier.notify_user("user-b", _event())

        channel, body = redis.publish.call_args[0]
        assert channel == "chat:user:user-b"
        decoded = json.loads(body)
        assert decoded["event"] == "message:new"
        assert decoded["entity_ids"]["message_id"] == "msg-1"
        assert decoded["actor_id"] == "user-a"
        assert "timestamp" in decoded

    def test_notify_conversation_publishes_on_conversation_channel(self):
        redis = MagicMock()
        redis.publish.return_value = 0
        notifier = RedisNotifier(redis=redis, channels=ChannelKeys("chat"))

        notifier.notify_conversation("conv-1", _event())

        assert redis.publish.call_args[0][0] == "chat:conversation:conv-1"

    @patch("chat_core.core.notifier.get_settings")
    @patch("chat_core.core.notifier.get_redis")
    def test_defaults_come_from_process_settings(self, mock_get_redis, mock_settings):
        mock_settings.return_value = MagicMock(notification_channel_prefix="staging")
        mock_get_redis.return_value.publish.return_value = 0

        RedisNotifier().notify_user("user-b", _event())

        assert mock_get_redis.return_value.publish.call_args[0][0] == "staging:user:user-b"


class TestGetNotifier:
    @patch("chat_core.core.notifier.get_settings")
    def test_disabled_returns_null_notifier(self, mock_settings):
        mock_settings.return_value = MagicMock(notifications_enabled=False)
        notifier = get_notifier()
        assert isinstance(notifier, NullNotifier)
        assert notifier.notify_user("user-a", _event()) is None

    @patch("chat_core.core.notifier.get_settings")
    def test_enabled_returns_redis_notifier(self, mock_settings):
        mock_settings.return_value = MagicMock(notifications_enabled=True)
        assert isinstance(get_notifier(), RedisNotifier)
