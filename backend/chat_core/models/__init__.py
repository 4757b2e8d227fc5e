"""Pydantic models and error taxonomy for the chat core."""

from chat_core.models.conversation import (
    ConversationDB,
    ConversationInfo,
    ConversationKind,
    ConversationStatus,
    GroupDetails,
    GroupPermissions,
    MemberInfo,
    MemberRole,
    MembershipDB,
)
from chat_core.models.errors import (
    ChatServiceError,
    ConflictError,
    ForbiddenError,
    GoneError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from chat_core.models.message import (
    MessageDB,
    MessageInfo,
    MessageStatus,
    MessageType,
    ReadReceiptDB,
)
from chat_core.models.notification import NotificationEvent, NotificationEventType

__all__ = [
    # Conversation models
    "ConversationDB",
    "ConversationInfo",
    "ConversationKind",
    "ConversationStatus",
    "GroupDetails",
    "GroupPermissions",
    "MemberInfo",
    "MemberRole",
    "MembershipDB",
    # Message models
    "MessageDB",
    "MessageInfo",
    "MessageStatus",
    "MessageType",
    "ReadReceiptDB",
    # Notifications
    "NotificationEvent",
    "NotificationEventType",
    # Errors
    "ChatServiceError",
    "ConflictError",
    "ForbiddenError",
    "GoneError",
    "InvalidStateError",
    "NotFoundError",
    "ValidationError",
]
