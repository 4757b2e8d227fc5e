"""Real-time notifier collaborators.

Fire-and-forget pattern: services call the notifier only after the data
mutation has returned, and delivery failures never reach the caller.
The push transport that owns client connections subscribes to the Redis
channels named by ChannelKeys.
"""

import logging
from typing import Optional, Protocol

from redis import Redis

from chat_core.core.config import get_settings
from chat_core.core.redis import ChannelKeys, get_redis
from chat_core.models.notification import NotificationEvent

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers named events to one user or to a conversation's active members."""

    def notify_user(self, user_id: str, event: NotificationEvent) -> None: ...

    def notify_conversation(self, conversation_id: str, event: NotificationEvent) -> None: ...


class NullNotifier:
    """Notifier that drops every event."""

    def notify_user(self, user_id: str, event: NotificationEvent) -> None:
        return None

    def notify_conversation(self, conversation_id: str, event: NotificationEvent) -> None:
        return None


class RedisNotifier:
    """Publishes events as JSON on Redis pub/sub channels."""

    def __init__(
        self,
        redis: Optional[Redis] = None,
        channels: Optional[ChannelKeys] = None,
    ) -> None:
        self._redis = redis
        self._channels = channels

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    @property
    def channels(self) -> ChannelKeys:
        if self._channels is None:
            self._channels = ChannelKeys(get_settings().notification_channel_prefix)
        return self._channels

    def notify_user(self, user_id: str, event: NotificationEvent) -> None:
        self._publish(self.channels.user(user_id), event)

    def notify_conversation(self, conversation_id: str, event: NotificationEvent) -> None:
        self._publish(self.channels.conversation(conversation_id), event)

    def _publish(self, channel: str, event: NotificationEvent) -> None:
        receivers = self.redis.publish(channel, event.model_dump_json())
        logger.debug("Published %s to %s (%d receivers)", event.event.value, channel, receivers)


def get_notifier() -> Notifier:
    """Build the notifier for this process from settings."""
    if not get_settings().notifications_enabled:
        logger.info("Notifications disabled (notifications_enabled=False)")
        return NullNotifier()
    return RedisNotifier()
