"""
Read tracking service.

Handles:
- Per-message read receipts (idempotent on (message_id, user_id))
- Bulk "mark conversation read", optionally bounded by a message
- Unread counts and unread message pages derived from receipts
- Reader lists for display

Receipts are the only source of truth for read state. Counting, listing and
bulk marking run as database functions (anti-joins against message_reads),
so they cover every message in a conversation. The membership's
last_read_message_id / last_read_at columns are a display lookup kept in
step with marking and never consulted for counting.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from postgrest.exceptions import APIError

from chat_core.core.constants import MESSAGES_PAGE_SIZE
from chat_core.models.errors import ValidationError
from chat_core.models.message import (
    ConversationReadResult,
    MarkReadResult,
    MessageDB,
    MessagesResponse,
    MessageStatus,
    ReaderInfo,
    ReadReceiptDB,
    ReadStatus,
)
from chat_core.models.notification import NotificationEvent, NotificationEventType
from chat_core.services.base import BaseChatService, clamp_page, is_unique_violation

logger = logging.getLogger(__name__)


class ReadTracker(BaseChatService):
    """Service for read receipts and unread counts."""

    # =========================================================================
    # Public API
    # =========================================================================

    def mark_message_read(self, message_id: str, user_id: str) -> MarkReadResult:
        """
        Record that user_id has read message_id.

        Marking twice, or marking one's own message, is a no-op reported
        as already_read. A concurrent duplicate insert is treated the same.

        Raises:
            MessageNotFoundError: Message doesn't exist
            NotConversationMemberError: User is not an active member
        """
        message = self._get_message(message_id)
        membership = self._require_membership(message.conversation_id, user_id)

        if message.sender_id == user_id:
            return MarkReadResult(message_id=message_id, already_read=True)

        existing = self._get_receipt(message_id, user_id)
        if existing is not None:
            return MarkReadResult(
                message_id=message_id, already_read=True, read_at=existing.read_at
            )

        now = datetime.now(timezone.utc)
        try:
            self.supabase.table("message_reads").insert(
                {"message_id": message_id, "user_id": user_id, "read_at": now.isoformat()}
            ).execute()
        except APIError as e:
            if not is_unique_violation(e):
                raise
            logger.debug("Concurrent read receipt for message %s by %s", message_id, user_id)
            existing = self._get_receipt(message_id, user_id)
            return MarkReadResult(
                message_id=message_id,
                already_read=True,
                read_at=existing.read_at if existing else None,
            )

        self._update_read_position(membership.id, message_id, now)
        self._mark_status_read([message_id])

        self._notify_conversation_safely(
            message.conversation_id,
            NotificationEvent(
                event=NotificationEventType.MESSAGE_READ,
                entity_ids={
                    "conversation_id": message.conversation_id,
                    "message_id": message_id,
                },
                actor_id=user_id,
                payload={"message_ids": [message_id], "read_at": now.isoformat()},
            ),
        )

        return MarkReadResult(message_id=message_id, already_read=False, read_at=now)

    def mark_conversation_read(
        self,
        conversation_id: str,
        user_id: str,
        through_message_id: Optional[str] = None,
    ) -> ConversationReadResult:
        """
        Mark every message by other users as read, up to and including
        through_message_id when given.

        Receipts, status promotion and the read position are written by the
        mark_conversation_read() RPC in one statement set, so the whole
        conversation is covered however long it is.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            NotConversationMemberError: User is not an active member
            MessageNotFoundError: through_message_id doesn't exist
            ValidationError: through_message_id belongs to another conversation
        """
        self._get_conversation(conversation_id)
        self._require_membership(conversation_id, user_id)

        through_at = None
        if through_message_id:
            through = self._get_message(through_message_id)
            if through.conversation_id != conversation_id:
                raise ValidationError(
                    f"Message {through_message_id} does not belong to this conversation"
                )
            through_at = through.created_at.isoformat()

        result = self.supabase.rpc(
            "mark_conversation_read",
            {
                "p_conversation_id": conversation_id,
                "p_user_id": user_id,
                "p_through": through_at,
            },
        ).execute()
        row = result.data[0] if result.data else {}
        marked = row.get("marked_message_ids") or []
        total = row.get("total_processed") or 0

        logger.info(
            "Marked %d messages read in conversation %s for %s",
            len(marked),
            conversation_id,
            user_id,
            extra={"conversation_id": conversation_id, "user_id": user_id},
        )

        if marked:
            self._notify_conversation_safely(
                conversation_id,
                NotificationEvent(
                    event=NotificationEventType.MESSAGE_READ,
                    entity_ids={"conversation_id": conversation_id},
                    actor_id=user_id,
                    payload={"message_ids": marked, "read_at": row.get("marked_at")},
                ),
            )

        return ConversationReadResult(
            conversation_id=conversation_id,
            marked_count=len(marked),
            already_read_count=total - len(marked),
            total_processed=total,
        )

    def unread_count(self, conversation_id: str, user_id: str) -> int:
        """Messages by other users with no receipt from user_id."""
        result = self.supabase.rpc(
            "conversation_unread_count",
            {"p_conversation_id": conversation_id, "p_user_id": user_id},
        ).execute()
        return int(result.data or 0)

    def unread_messages(
        self,
        conversation_id: str,
        user_id: str,
        limit: int = MESSAGES_PAGE_SIZE,
        offset: int = 0,
    ) -> MessagesResponse:
        """
        A page of the messages user_id has not read yet, oldest first.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            NotConversationMemberError: User is not an active member
        """
        self._get_conversation(conversation_id)
        self._require_membership(conversation_id, user_id)
        limit, offset = clamp_page(limit, offset, MESSAGES_PAGE_SIZE)

        rows = (
            self.supabase.rpc(
                "unread_messages",
                {
                    "p_conversation_id": conversation_id,
                    "p_user_id": user_id,
                    "p_limit": limit + 1,
                    "p_offset": offset,
                },
            ).execute()
        ).data or []

        messages = [MessageDB(**row) for row in rows[:limit]]
        names = self.identity.display_names({m.sender_id for m in messages})

        infos = []
        for message in messages:
            info = self._to_message_info(message, names)
            info.is_read_by_caller = False
            infos.append(info)

        return MessagesResponse(messages=infos, has_more=len(rows) > limit)

    def readers_of(self, message_id: str) -> list[ReaderInfo]:
        """
        Users who have read a message, earliest reader first.

        Raises:
            MessageNotFoundError: Message doesn't exist
        """
        self._get_message(message_id)
        return self.readers_for_messages([message_id]).get(message_id, [])

    def readers_for_messages(self, message_ids: list[str]) -> dict[str, list[ReaderInfo]]:
        """Batch reader lookup: message_id -> readers ordered by read_at."""
        if not message_ids:
            return {}

        rows = (
            self.supabase.table("message_reads")
            .select("message_id, user_id, read_at")
            .in_("message_id", message_ids)
            .order("read_at")
            .execute()
        ).data or []

        receipts = [ReadReceiptDB(**row) for row in rows]
        names = self.identity.display_names({r.user_id for r in receipts})

        readers: dict[str, list[ReaderInfo]] = {mid: [] for mid in message_ids}
        for receipt in receipts:
            readers.setdefault(receipt.message_id, []).append(
                ReaderInfo(
                    user_id=receipt.user_id,
                    display_name=names.get(receipt.user_id, receipt.user_id),
                    read_at=receipt.read_at,
                )
            )
        return readers

    def read_status_for_messages(
        self, message_ids: list[str], user_id: str
    ) -> dict[str, ReadStatus]:
        """Whether user_id has read each message."""
        if not message_ids:
            return {}

        rows = (
            self.supabase.table("message_reads")
            .select("message_id, user_id, read_at")
            .in_("message_id", message_ids)
            .eq("user_id", user_id)
            .execute()
        ).data or []

        statuses = {mid: ReadStatus() for mid in message_ids}
        for row in rows:
            receipt = ReadReceiptDB(**row)
            statuses[receipt.message_id] = ReadStatus(is_read=True, read_at=receipt.read_at)
        return statuses

    # =========================================================================
    # Private Helpers
    # =========================================================================

    def _get_receipt(self, message_id: str, user_id: str) -> Optional[ReadReceiptDB]:
        result = (
            self.supabase.table("message_reads")
            .select("message_id, user_id, read_at")
            .eq("message_id", message_id)
            .eq("user_id", user_id)
            .execute()
        )
        if not result.data:
            return None
        return ReadReceiptDB(**result.data[0])

    def _mark_status_read(self, message_ids: list[str]) -> None:
        """Promote message status to read on first receipt."""
        self.supabase.table("messages").update({"status": MessageStatus.READ.value}).in_(
            "id", message_ids
        ).neq("status", MessageStatus.READ.value).execute()

    def _update_read_position(self, membership_id: str, message_id: str, read_at: datetime) -> None:
        self.supabase.table("conversation_members").update(
            {"last_read_message_id": message_id, "last_read_at": read_at.isoformat()}
        ).eq("id", membership_id).execute()
