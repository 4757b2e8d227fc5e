"""Real-time notification events emitted after a mutation has committed."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NotificationEventType(str, Enum):
    """Event names understood by the push transport."""

    CONVERSATION_REQUEST_RECEIVED = "conversation:request_received"
    CONVERSATION_ACCEPTED = "conversation:accepted"
    CONVERSATION_REJECTED = "conversation:rejected"
    GROUP_MEMBER_LEFT = "group:member_left"
    MESSAGE_NEW = "message:new"
    MESSAGE_EDITED = "message:edited"
    MESSAGE_DELETED = "message:deleted"
    MESSAGE_READ = "message:read"


class NotificationEvent(BaseModel):
    """Envelope delivered to a user's or a conversation's connections."""

    event: NotificationEventType
    entity_ids: dict[str, str]
    actor_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: dict[str, Any] = Field(default_factory=dict)
