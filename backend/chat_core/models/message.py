"""
Message and read receipt models.

DB row models mirror the `messages` and `message_reads` tables; the Info
models are what services hand back to callers.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ===========================================
# Enums
# ===========================================


class MessageType(str, Enum):
    """Kind of message payload."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    """Delivery status of a message."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


# ===========================================
# DB Models
# ===========================================


class MessageDB(BaseModel):
    """Raw row from the messages table."""

    id: str
    conversation_id: str
    sender_id: str
    content: str
    type: MessageType = MessageType.TEXT
    status: MessageStatus = MessageStatus.SENT
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    reply_to_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime


class ReadReceiptDB(BaseModel):
    """Raw row from the message_reads table."""

    message_id: str
    user_id: str
    read_at: datetime


# ===========================================
# Response Models
# ===========================================


class SenderInfo(BaseModel):
    """Author profile embedded in messages."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    display_name: str


class ReplyPreview(BaseModel):
    """The message being replied to, trimmed for display."""

    id: str
    content: str
    sender: Optional[SenderInfo] = None
    created_at: datetime


class ReaderInfo(BaseModel):
    """A user who has read a message."""

    user_id: str
    display_name: Optional[str] = None
    read_at: datetime


class MessageInfo(BaseModel):
    """A single message with display fields resolved."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    sender_id: str
    sender: Optional[SenderInfo] = None
    content: str
    type: MessageType = MessageType.TEXT
    status: MessageStatus = MessageStatus.SENT
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    reply_to_id: Optional[str] = None
    reply_to: Optional[ReplyPreview] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime
    # Populated by MessageService.list_for_conversation
    is_read_by_caller: Optional[bool] = None
    read_by_count: int = 0
    readers: list[ReaderInfo] = Field(default_factory=list)


class MessagesResponse(BaseModel):
    """A page of messages in chronological order."""

    messages: list[MessageInfo]
    has_more: bool = False


class MarkReadResult(BaseModel):
    """Outcome of marking one message as read."""

    message_id: str
    already_read: bool
    read_at: Optional[datetime] = None


class ConversationReadResult(BaseModel):
    """Outcome of marking a whole conversation as read."""

    conversation_id: str
    marked_count: int
    already_read_count: int
    total_processed: int


class ReadStatus(BaseModel):
    """Whether one user has read one message."""

    is_read: bool = False
    read_at: Optional[datetime] = None


class DeleteMessageResult(BaseModel):
    """Response after deleting a message."""

    message_id: str
    conversation_id: str
    message: str = "Message deleted"
