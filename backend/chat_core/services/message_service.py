"""
Message service for conversation messaging.

Handles:
- Sending messages (with optional reply and metadata)
- Editing within the edit window
- Hard deletion with last-message repointing
- Paginated history with reader info
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from supabase import Client

from chat_core.core.constants import (
    MESSAGE_EDIT_WINDOW_HOURS,
    MESSAGE_MAX_LENGTH,
    MESSAGES_PAGE_SIZE,
)
from chat_core.core.identity import IdentityProvider
from chat_core.core.notifier import Notifier
from chat_core.models.errors import (
    EditWindowExpiredError,
    MessageNotFoundError,
    NotMessageOwnerError,
    ValidationError,
)
from chat_core.models.message import (
    DeleteMessageResult,
    MessageDB,
    MessageInfo,
    MessagesResponse,
    MessageStatus,
    MessageType,
)
from chat_core.models.notification import NotificationEvent, NotificationEventType
from chat_core.services.base import BaseChatService, clamp_page
from chat_core.services.read_tracker import ReadTracker

logger = logging.getLogger(__name__)


def _clean_content(content: Optional[str]) -> str:
    text = (content or "").strip()
    if not text:
        raise ValidationError("Message content cannot be empty")
    if len(text) > MESSAGE_MAX_LENGTH:
        raise ValidationError(f"Message content exceeds {MESSAGE_MAX_LENGTH} characters")
    return text


def _parse_message_type(message_type: Union[MessageType, str]) -> MessageType:
    try:
        return MessageType(message_type)
    except ValueError:
        raise ValidationError(f"Unknown message type: {message_type!r}")


class MessageService(BaseChatService):
    """Service for sending, editing, deleting and listing messages."""

    def __init__(
        self,
        supabase: Optional[Client] = None,
        notifier: Optional[Notifier] = None,
        identity: Optional[IdentityProvider] = None,
        read_tracker: Optional[ReadTracker] = None,
    ) -> None:
        super().__init__(supabase=supabase, notifier=notifier, identity=identity)
        self._read_tracker = read_tracker

    @property
    def read_tracker(self) -> ReadTracker:
        if self._read_tracker is None:
            self._read_tracker = ReadTracker(
                supabase=self.supabase, notifier=self.notifier, identity=self.identity
            )
        return self._read_tracker

    # =========================================================================
    # Public API
    # =========================================================================

    def send(
        self,
        sender_id: str,
        conversation_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> MessageInfo:
        """
        Send a message and bump the conversation's last activity.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            NotConversationMemberError: Sender is not an active member
            ValidationError: Empty/oversized content, unknown type or invalid reply target
        """
        self._get_conversation(conversation_id)
        self._require_membership(conversation_id, sender_id)
        text = _clean_content(content)
        kind = _parse_message_type(message_type)

        reply_to = None
        if reply_to_id:
            reply_to = self._get_reply_target(reply_to_id, conversation_id)

        now = datetime.now(timezone.utc)
        result = (
            self.supabase.table("messages")
            .insert(
                {
                    "conversation_id": conversation_id,
                    "sender_id": sender_id,
                    "content": text,
                    "type": kind.value,
                    "status": MessageStatus.SENT.value,
                    "reply_to_id": reply_to_id,
                    "metadata": metadata,
                    "created_at": now.isoformat(),
                }
            )
            .execute()
        )
        message = MessageDB(**result.data[0])

        self.supabase.table("conversations").update(
            {"last_message_id": message.id, "last_activity_at": now.isoformat()}
        ).eq("id", conversation_id).execute()

        names = self.identity.display_names(
            {sender_id} | ({reply_to.sender_id} if reply_to else set())
        )
        info = self._to_message_info(message, names, reply_to)

        logger.info(
            "Message %s sent to conversation %s",
            message.id,
            conversation_id,
            extra={"conversation_id": conversation_id, "message_id": message.id},
        )

        self._notify_conversation_safely(
            conversation_id,
            NotificationEvent(
                event=NotificationEventType.MESSAGE_NEW,
                entity_ids={"conversation_id": conversation_id, "message_id": message.id},
                actor_id=sender_id,
                payload={"message": info.model_dump(mode="json")},
            ),
        )

        return info

    def edit(self, message_id: str, user_id: str, new_content: str) -> MessageInfo:
        """
        Replace a message's content. Only the author may edit, and only
        within MESSAGE_EDIT_WINDOW_HOURS of sending.

        Raises:
            MessageNotFoundError: Message doesn't exist
            NotMessageOwnerError: Caller is not the author
            EditWindowExpiredError: Message is older than the edit window
            ValidationError: Empty or oversized content
        """
        message = self._get_message(message_id)

        if message.sender_id != user_id:
            raise NotMessageOwnerError("You can only edit your own messages")

        now = datetime.now(timezone.utc)
        if now - message.created_at > timedelta(hours=MESSAGE_EDIT_WINDOW_HOURS):
            raise EditWindowExpiredError(message_id, MESSAGE_EDIT_WINDOW_HOURS)

        text = _clean_content(new_content)

        result = (
            self.supabase.table("messages")
            .update({"content": text, "is_edited": True, "edited_at": now.isoformat()})
            .eq("id", message_id)
            .execute()
        )
        if not result.data:
            raise MessageNotFoundError(f"Message {message_id} not found")

        updated = MessageDB(**result.data[0])
        info = self._to_message_info(updated, self.identity.display_names([user_id]))

        self._notify_conversation_safely(
            updated.conversation_id,
            NotificationEvent(
                event=NotificationEventType.MESSAGE_EDITED,
                entity_ids={"conversation_id": updated.conversation_id, "message_id": message_id},
                actor_id=user_id,
                payload={"message": info.model_dump(mode="json")},
            ),
        )

        return info

    def delete(self, message_id: str, user_id: str) -> DeleteMessageResult:
        """
        Hard-delete a message. Receipts cascade; replies keep their content
        with reply_to_id cleared.

        Raises:
            MessageNotFoundError: Message doesn't exist
            NotMessageOwnerError: Caller is not the author
        """
        message = self._get_message(message_id)

        if message.sender_id != user_id:
            raise NotMessageOwnerError("You can only delete your own messages")

        self.supabase.table("messages").delete().eq("id", message_id).execute()
        self._repoint_last_message(message.conversation_id)

        logger.info(
            "Message %s deleted from conversation %s",
            message_id,
            message.conversation_id,
            extra={"conversation_id": message.conversation_id, "message_id": message_id},
        )

        self._notify_conversation_safely(
            message.conversation_id,
            NotificationEvent(
                event=NotificationEventType.MESSAGE_DELETED,
                entity_ids={"conversation_id": message.conversation_id, "message_id": message_id},
                actor_id=user_id,
            ),
        )

        return DeleteMessageResult(message_id=message_id, conversation_id=message.conversation_id)

    def list_for_conversation(
        self,
        conversation_id: str,
        user_id: str,
        limit: int = MESSAGES_PAGE_SIZE,
        offset: int = 0,
        before: Optional[datetime] = None,
        after: Optional[datetime] = None,
    ) -> MessagesResponse:
        """
        A page of messages in chronological order. Pages are taken from the
        newest end, so offset=0 is the most recent page.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            NotConversationMemberError: Caller is not an active member
        """
        self._get_conversation(conversation_id)
        self._require_membership(conversation_id, user_id)
        limit, offset = clamp_page(limit, offset, MESSAGES_PAGE_SIZE)

        query = self.supabase.table("messages").select("*").eq("conversation_id", conversation_id)
        if before is not None:
            query = query.lt("created_at", before.isoformat())
        if after is not None:
            query = query.gt("created_at", after.isoformat())

        # One extra row tells us whether an older page exists
        rows = (
            query.order("created_at", desc=True).range(offset, offset + limit).execute()
        ).data or []

        has_more = len(rows) > limit
        messages = [MessageDB(**row) for row in reversed(rows[:limit])]

        if not messages:
            return MessagesResponse(messages=[], has_more=False)

        readers = self.read_tracker.readers_for_messages([m.id for m in messages])
        replies = self._get_reply_targets([m.reply_to_id for m in messages if m.reply_to_id])
        names = self.identity.display_names(
            {m.sender_id for m in messages} | {r.sender_id for r in replies.values()}
        )

        infos = []
        for message in messages:
            info = self._to_message_info(message, names, replies.get(message.reply_to_id or ""))
            message_readers = readers.get(message.id, [])
            info.readers = message_readers
            info.read_by_count = len(message_readers)
            info.is_read_by_caller = message.sender_id == user_id or any(
                r.user_id == user_id for r in message_readers
            )
            infos.append(info)

        return MessagesResponse(messages=infos, has_more=has_more)

    # =========================================================================
    # Private Helpers
    # =========================================================================

    def _get_reply_target(self, reply_to_id: str, conversation_id: str) -> MessageDB:
        try:
            target = self._get_message(reply_to_id)
        except MessageNotFoundError:
            raise ValidationError(f"Reply target {reply_to_id} does not exist")
        if target.conversation_id != conversation_id:
            raise ValidationError("Reply target belongs to another conversation")
        return target

    def _get_reply_targets(self, message_ids: list[str]) -> dict[str, MessageDB]:
        if not message_ids:
            return {}
        rows = (
            self.supabase.table("messages").select("*").in_("id", list(set(message_ids))).execute()
        ).data or []
        return {row["id"]: MessageDB(**row) for row in rows}

    def _repoint_last_message(self, conversation_id: str) -> None:
        """
        Point last_message_id at the newest remaining message.

        Deleting the referenced message nulls the pointer (FK on delete set
        null); the is-null guard keeps a concurrent send's pointer intact.
        last_activity_at is left alone.
        """
        newest = (
            self.supabase.table("messages")
            .select("id")
            .eq("conversation_id", conversation_id)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        ).data
        if not newest:
            return

        self.supabase.table("conversations").update({"last_message_id": newest[0]["id"]}).eq(
            "id", conversation_id
        ).is_("last_message_id", "null").execute()
