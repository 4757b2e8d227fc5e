"""
Shared plumbing for chat core services.

Owns the membership reads every service authorizes against, collaborator
wiring (Supabase client, Notifier, Identity Provider), best-effort
notification, and recognition of the storage errors the services handle.
"""

import logging
from typing import Iterable, Optional

from postgrest.exceptions import APIError
from supabase import Client

from chat_core.core.constants import MAX_PAGE_SIZE, UNIQUE_VIOLATION_CODE
from chat_core.core.database import get_supabase
from chat_core.core.identity import IdentityProvider, SupabaseIdentityProvider
from chat_core.core.notifier import Notifier, NullNotifier
from chat_core.models.conversation import ConversationDB, MembershipDB
from chat_core.models.errors import (
    ConversationNotFoundError,
    MessageNotFoundError,
    NotConversationMemberError,
    UserNotFoundError,
)
from chat_core.models.message import (
    MessageDB,
    MessageInfo,
    ReplyPreview,
    SenderInfo,
)
from chat_core.models.notification import NotificationEvent

logger = logging.getLogger(__name__)


def is_unique_violation(error: APIError) -> bool:
    """True when PostgREST reports a unique constraint violation."""
    return getattr(error, "code", None) == UNIQUE_VIOLATION_CODE


def clamp_page(limit: Optional[int], offset: Optional[int], default: int) -> tuple[int, int]:
    """Bound a requested page to [1, MAX_PAGE_SIZE] rows starting at offset >= 0."""
    size = default if limit is None else limit
    size = max(1, min(size, MAX_PAGE_SIZE))
    return size, max(0, offset or 0)


class BaseChatService:
    """Collaborators and membership helpers common to every chat service."""

    def __init__(
        self,
        supabase: Optional[Client] = None,
        notifier: Optional[Notifier] = None,
        identity: Optional[IdentityProvider] = None,
    ) -> None:
        self._supabase = supabase
        self._notifier = notifier
        self._identity = identity

    @property
    def supabase(self) -> Client:
        if self._supabase is None:
            self._supabase = get_supabase()
        return self._supabase

    @property
    def notifier(self) -> Notifier:
        if self._notifier is None:
            self._notifier = NullNotifier()
        return self._notifier

    @property
    def identity(self) -> IdentityProvider:
        if self._identity is None:
            self._identity = SupabaseIdentityProvider(self.supabase)
        return self._identity

    # =========================================================================
    # Lookups
    # =========================================================================

    def _get_conversation(self, conversation_id: str) -> ConversationDB:
        """Fetch a conversation by ID. Raises if not found."""
        result = (
            self.supabase.table("conversations").select("*").eq("id", conversation_id).execute()
        )

        if not result.data:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")

        return ConversationDB(**result.data[0])

    def _get_message(self, message_id: str) -> MessageDB:
        """Fetch a message by ID. Raises if not found."""
        result = self.supabase.table("messages").select("*").eq("id", message_id).execute()

        if not result.data:
            raise MessageNotFoundError(f"Message {message_id} not found")

        return MessageDB(**result.data[0])

    def _get_active_membership(
        self, conversation_id: str, user_id: str
    ) -> Optional[MembershipDB]:
        """The user's current (not left) membership, if any."""
        result = (
            self.supabase.table("conversation_members")
            .select("*")
            .eq("conversation_id", conversation_id)
            .eq("user_id", user_id)
            .is_("left_at", "null")
            .execute()
        )

        if not result.data:
            return None

        return MembershipDB(**result.data[0])

    def _require_membership(self, conversation_id: str, user_id: str) -> MembershipDB:
        """Active membership of the caller. Raises if absent."""
        membership = self._get_active_membership(conversation_id, user_id)
        if membership is None:
            raise NotConversationMemberError("You are not a member of this conversation")
        return membership

    def _get_active_memberships(self, conversation_id: str) -> list[MembershipDB]:
        """All active memberships, longest-tenured first."""
        result = (
            self.supabase.table("conversation_members")
            .select("*")
            .eq("conversation_id", conversation_id)
            .is_("left_at", "null")
            .order("joined_at")
            .execute()
        )
        return [MembershipDB(**row) for row in result.data or []]

    def _require_active_users(self, user_ids: Iterable[str]) -> None:
        """Raise UserNotFoundError for the first id the Identity Provider rejects."""
        user_ids = list(user_ids)
        if not user_ids:
            return
        active = self.identity.active_users(user_ids)
        for user_id in user_ids:
            if user_id not in active:
                raise UserNotFoundError(f"User {user_id} not found")

    # =========================================================================
    # Display
    # =========================================================================

    @staticmethod
    def _sender(user_id: str, names: dict[str, str]) -> SenderInfo:
        return SenderInfo(user_id=user_id, display_name=names.get(user_id, user_id))

    def _to_message_info(
        self,
        message: MessageDB,
        names: dict[str, str],
        reply_to: Optional[MessageDB] = None,
    ) -> MessageInfo:
        """Message with sender and reply target resolved for display."""
        preview = None
        if reply_to is not None:
            preview = ReplyPreview(
                id=reply_to.id,
                content=reply_to.content,
                sender=self._sender(reply_to.sender_id, names),
                created_at=reply_to.created_at,
            )

        return MessageInfo(
            **message.model_dump(),
            sender=self._sender(message.sender_id, names),
            reply_to=preview,
        )

    # =========================================================================
    # Notifications
    # =========================================================================

    def _notify_user_safely(self, user_id: str, event: NotificationEvent) -> None:
        """Deliver to one user; failures are logged, never raised."""
        try:
            self.notifier.notify_user(user_id, event)
        except Exception as e:
            logger.warning("Notification %s to user %s failed: %s", event.event.value, user_id, e)

    def _notify_conversation_safely(self, conversation_id: str, event: NotificationEvent) -> None:
        """Deliver to a conversation's members; failures are logged, never raised."""
        try:
            self.notifier.notify_conversation(conversation_id, event)
        except Exception as e:
            logger.warning(
                "Notification %s to conversation %s failed: %s",
                event.event.value,
                conversation_id,
                e,
            )
