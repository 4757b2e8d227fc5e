"""
Conversation service.

Handles:
- Private conversation requests (create, reopen, auto-accept)
- Accepting and rejecting pending requests
- Group creation
- Listing a user's conversations with unread counts
- Per-user deletion (archive private, leave group)

At most one private conversation exists per user pair. The pair_key unique
index arbitrates concurrent creators; status transitions are
compare-and-swap updates guarded on the status they expect.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

from postgrest.exceptions import APIError
from supabase import Client

from chat_core.core.constants import DEFAULT_PAGE_SIZE, MAX_CAS_RETRIES
from chat_core.core.identity import IdentityProvider
from chat_core.core.notifier import Notifier
from chat_core.models.conversation import (
    ArchiveConversationResult,
    ConversationDB,
    ConversationInfo,
    ConversationKind,
    ConversationListResponse,
    ConversationStatus,
    LeaveGroupResult,
    MemberInfo,
    MemberRole,
    make_pair_key,
)
from chat_core.models.errors import (
    ConcurrentModificationError,
    ConversationStateError,
    MessageNotFoundError,
    SelfConversationError,
    ValidationError,
)
from chat_core.models.message import MessageDB
from chat_core.models.notification import NotificationEvent, NotificationEventType
from chat_core.services.base import BaseChatService, clamp_page, is_unique_violation
from chat_core.services.group_manager import (
    GroupManager,
    clean_group_description,
    clean_group_name,
)
from chat_core.services.read_tracker import ReadTracker

logger = logging.getLogger(__name__)

StatusFilter = Union[ConversationStatus, str, Iterable[Union[ConversationStatus, str]], None]


def _normalize_status_filter(status_filter: StatusFilter) -> Optional[list[str]]:
    """None means every status; a single status or a collection narrows it."""
    if status_filter is None:
        return None
    if isinstance(status_filter, (ConversationStatus, str)):
        status_filter = [status_filter]
    try:
        return [ConversationStatus(s).value for s in status_filter]
    except ValueError:
        raise ValidationError(f"Unknown conversation status filter: {status_filter!r}")


class ConversationService(BaseChatService):
    """Service for conversation lifecycle and listing."""

    def __init__(
        self,
        supabase: Optional[Client] = None,
        notifier: Optional[Notifier] = None,
        identity: Optional[IdentityProvider] = None,
        read_tracker: Optional[ReadTracker] = None,
        group_manager: Optional[GroupManager] = None,
    ) -> None:
        super().__init__(supabase=supabase, notifier=notifier, identity=identity)
        self._read_tracker = read_tracker
        self._group_manager = group_manager

    @property
    def read_tracker(self) -> ReadTracker:
        if self._read_tracker is None:
            self._read_tracker = ReadTracker(
                supabase=self.supabase, notifier=self.notifier, identity=self.identity
            )
        return self._read_tracker

    @property
    def group_manager(self) -> GroupManager:
        if self._group_manager is None:
            self._group_manager = GroupManager(
                supabase=self.supabase, notifier=self.notifier, identity=self.identity
            )
        return self._group_manager

    # =========================================================================
    # Public API
    # =========================================================================

    def create_private(self, requester_id: str, other_user_id: str) -> ConversationInfo:
        """
        Open (or resume) the private conversation between two users.

        - none yet: created pending, requested by requester_id
        - rejected: reopened as pending, requested by requester_id
        - pending, requested by the other user: auto-accepted
        - otherwise: returned unchanged
        Either party's archived membership is restored.

        Raises:
            SelfConversationError: requester_id == other_user_id
            UserNotFoundError: Other user doesn't exist or is inactive
            ConcurrentModificationError: Lost the race MAX_CAS_RETRIES times
        """
        if requester_id == other_user_id:
            raise SelfConversationError("Cannot start a conversation with yourself")

        self._require_active_users([other_user_id])
        pair_key = make_pair_key(requester_id, other_user_id)

        for attempt in range(MAX_CAS_RETRIES):
            existing = self._find_private_conversation(pair_key)

            if existing is None:
                created = self._insert_private_conversation(requester_id, other_user_id, pair_key)
                if created is None:
                    logger.debug("Lost private create race for %s (attempt %d)", pair_key, attempt + 1)
                    continue
                logger.info(
                    "Private conversation %s requested by %s",
                    created.id,
                    requester_id,
                    extra={"conversation_id": created.id, "user_id": requester_id},
                )
                self._notify_request(created.id, requester_id, other_user_id)
                return self.get_details(created.id, requester_id, skip_member_check=True)

            now = datetime.now(timezone.utc).isoformat()

            if existing.status == ConversationStatus.REJECTED:
                if not self._compare_and_set(
                    existing.id,
                    expected={"status": ConversationStatus.REJECTED.value},
                    changes={
                        "status": ConversationStatus.PENDING.value,
                        "created_by": requester_id,
                        "last_activity_at": now,
                    },
                ):
                    continue
                self._restore_memberships(existing.id, [requester_id, other_user_id])
                logger.info(
                    "Private conversation %s reopened by %s",
                    existing.id,
                    requester_id,
                    extra={"conversation_id": existing.id, "user_id": requester_id},
                )
                self._notify_request(existing.id, requester_id, other_user_id)

            elif (
                existing.status == ConversationStatus.PENDING
                and existing.created_by == other_user_id
            ):
                if not self._compare_and_set(
                    existing.id,
                    expected={
                        "status": ConversationStatus.PENDING.value,
                        "created_by": other_user_id,
                    },
                    changes={"status": ConversationStatus.ACCEPTED.value, "last_activity_at": now},
                ):
                    continue
                self._restore_memberships(existing.id, [requester_id, other_user_id])
                logger.info(
                    "Private conversation %s auto-accepted by %s",
                    existing.id,
                    requester_id,
                    extra={"conversation_id": existing.id, "user_id": requester_id},
                )
                self._notify_user_safely(
                    other_user_id,
                    NotificationEvent(
                        event=NotificationEventType.CONVERSATION_ACCEPTED,
                        entity_ids={"conversation_id": existing.id},
                        actor_id=requester_id,
                    ),
                )

            else:
                self._restore_memberships(existing.id, [requester_id, other_user_id])

            return self.get_details(existing.id, requester_id, skip_member_check=True)

        raise ConcurrentModificationError(
            "Conversation changed concurrently, please retry the request"
        )

    def create_group(
        self,
        creator_id: str,
        name: str,
        description: Optional[str] = None,
        member_ids: Iterable[str] = (),
    ) -> ConversationInfo:
        """
        Create a group owned by creator_id.

        Raises:
            ValidationError: Name empty/too long or description too long
            UserNotFoundError: A member doesn't exist or is inactive
        """
        clean_name = clean_group_name(name)
        clean_description = clean_group_description(description)
        members = [m for m in dict.fromkeys(member_ids or ()) if m and m != creator_id]

        self._require_active_users(members)

        result = self.supabase.rpc(
            "create_group_conversation",
            {
                "p_creator_id": creator_id,
                "p_name": clean_name,
                "p_description": clean_description,
                "p_member_ids": members,
            },
        ).execute()
        conversation = ConversationDB(**result.data[0])

        logger.info(
            "Group %s created by %s with %d members",
            conversation.id,
            creator_id,
            len(members) + 1,
            extra={"conversation_id": conversation.id, "user_id": creator_id},
        )

        return self.get_details(conversation.id, creator_id, skip_member_check=True)

    def accept(self, conversation_id: str, user_id: str) -> ConversationInfo:
        """
        Accept a pending request.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            NotConversationMemberError: Caller is not an active member
            ConversationStateError: Conversation is not pending
        """
        return self._respond(conversation_id, user_id, ConversationStatus.ACCEPTED)

    def reject(self, conversation_id: str, user_id: str) -> ConversationInfo:
        """
        Reject a pending request. The requester may reopen it later.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            NotConversationMemberError: Caller is not an active member
            ConversationStateError: Conversation is not pending
        """
        return self._respond(conversation_id, user_id, ConversationStatus.REJECTED)

    def list_for_user(
        self,
        user_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        include_archived: bool = False,
        status_filter: StatusFilter = ConversationStatus.ACCEPTED,
    ) -> ConversationListResponse:
        """
        Active conversations the user belongs to, most recent activity first.

        Raises:
            ValidationError: status_filter names an unknown status
        """
        statuses = _normalize_status_filter(status_filter)
        limit, offset = clamp_page(limit, offset, DEFAULT_PAGE_SIZE)

        # One extra row tells us whether another page exists
        rows = (
            self.supabase.rpc(
                "list_user_conversations",
                {
                    "p_user_id": user_id,
                    "p_statuses": statuses,
                    "p_include_archived": include_archived,
                    "p_limit": limit + 1,
                    "p_offset": offset,
                },
            ).execute()
        ).data or []

        has_more = len(rows) > limit
        conversations = [
            self._build_info(ConversationDB(**row), user_id) for row in rows[:limit]
        ]

        return ConversationListResponse(conversations=conversations, has_more=has_more)

    def list_pending(self, user_id: str) -> ConversationListResponse:
        """Pending requests the user is part of (sent or received)."""
        return self.list_for_user(user_id, status_filter=ConversationStatus.PENDING)

    def get_details(
        self, conversation_id: str, user_id: str, skip_member_check: bool = False
    ) -> ConversationInfo:
        """
        Full conversation view for one user.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            NotConversationMemberError: Caller is not an active member
        """
        conversation = self._get_conversation(conversation_id)
        if not skip_member_check:
            self._require_membership(conversation_id, user_id)
        return self._build_info(conversation, user_id)

    def delete_for_user(
        self, conversation_id: str, user_id: str
    ) -> Union[ArchiveConversationResult, LeaveGroupResult]:
        """
        Remove a conversation from the caller's list. Private conversations
        are archived for the caller only; groups are left.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            NotConversationMemberError: Caller is not an active member
        """
        conversation = self._get_conversation(conversation_id)
        membership = self._require_membership(conversation_id, user_id)

        if conversation.is_group:
            return self.group_manager.leave_group(conversation_id, user_id)

        self.supabase.table("conversation_members").update(
            {"left_at": datetime.now(timezone.utc).isoformat()}
        ).eq("id", membership.id).is_("left_at", "null").execute()

        logger.info(
            "Private conversation %s archived for %s",
            conversation_id,
            user_id,
            extra={"conversation_id": conversation_id, "user_id": user_id},
        )

        return ArchiveConversationResult(
            conversation_id=conversation_id, kind=ConversationKind.PRIVATE
        )

    # =========================================================================
    # Private Helpers
    # =========================================================================

    def _respond(
        self, conversation_id: str, user_id: str, target: ConversationStatus
    ) -> ConversationInfo:
        conversation = self._get_conversation(conversation_id)
        self._require_membership(conversation_id, user_id)

        if conversation.status != ConversationStatus.PENDING:
            raise ConversationStateError(
                f"Conversation is {conversation.status.value}, not pending"
            )

        if not self._compare_and_set(
            conversation_id,
            expected={"status": ConversationStatus.PENDING.value},
            changes={
                "status": target.value,
                "last_activity_at": datetime.now(timezone.utc).isoformat(),
            },
        ):
            raise ConversationStateError("Conversation request was already answered")

        logger.info(
            "Conversation %s %s by %s",
            conversation_id,
            target.value,
            user_id,
            extra={"conversation_id": conversation_id, "user_id": user_id},
        )

        event_type = (
            NotificationEventType.CONVERSATION_ACCEPTED
            if target == ConversationStatus.ACCEPTED
            else NotificationEventType.CONVERSATION_REJECTED
        )
        if conversation.created_by != user_id:
            self._notify_user_safely(
                conversation.created_by,
                NotificationEvent(
                    event=event_type,
                    entity_ids={"conversation_id": conversation_id},
                    actor_id=user_id,
                ),
            )

        return self.get_details(conversation_id, user_id)

    def _find_private_conversation(self, pair_key: str) -> Optional[ConversationDB]:
        result = (
            self.supabase.table("conversations")
            .select("*")
            .eq("kind", ConversationKind.PRIVATE.value)
            .eq("pair_key", pair_key)
            .execute()
        )
        if not result.data:
            return None
        return ConversationDB(**result.data[0])

    def _insert_private_conversation(
        self, requester_id: str, other_user_id: str, pair_key: str
    ) -> Optional[ConversationDB]:
        """Create conversation + both memberships. None if a concurrent creator won."""
        try:
            result = self.supabase.rpc(
                "create_private_conversation",
                {
                    "p_requester_id": requester_id,
                    "p_other_id": other_user_id,
                    "p_pair_key": pair_key,
                },
            ).execute()
        except APIError as e:
            if is_unique_violation(e):
                return None
            raise
        return ConversationDB(**result.data[0])

    def _compare_and_set(self, conversation_id: str, expected: dict, changes: dict) -> bool:
        """Apply changes only if the row still matches expected. True on success."""
        query = self.supabase.table("conversations").update(changes).eq("id", conversation_id)
        for column, value in expected.items():
            query = query.eq(column, value)
        return bool(query.execute().data)

    def _restore_memberships(self, conversation_id: str, user_ids: list[str]) -> None:
        """Give each user an active membership again if they had archived."""
        active = (
            self.supabase.table("conversation_members")
            .select("user_id")
            .eq("conversation_id", conversation_id)
            .in_("user_id", user_ids)
            .is_("left_at", "null")
            .execute()
        ).data or []
        present = {row["user_id"] for row in active}

        for user_id in user_ids:
            if user_id in present:
                continue
            try:
                self.supabase.table("conversation_members").insert(
                    {
                        "conversation_id": conversation_id,
                        "user_id": user_id,
                        "role": MemberRole.MEMBER.value,
                    }
                ).execute()
            except APIError as e:
                # Restored concurrently
                if not is_unique_violation(e):
                    raise
                continue
            logger.info(
                "Membership of %s in %s restored",
                user_id,
                conversation_id,
                extra={"conversation_id": conversation_id, "user_id": user_id},
            )

    def _notify_request(self, conversation_id: str, requester_id: str, other_user_id: str) -> None:
        self._notify_user_safely(
            other_user_id,
            NotificationEvent(
                event=NotificationEventType.CONVERSATION_REQUEST_RECEIVED,
                entity_ids={"conversation_id": conversation_id},
                actor_id=requester_id,
            ),
        )

    def _get_last_message(self, conversation: ConversationDB) -> Optional[MessageDB]:
        if not conversation.last_message_id:
            return None
        try:
            return self._get_message(conversation.last_message_id)
        except MessageNotFoundError:
            return None

    def _build_info(self, conversation: ConversationDB, user_id: str) -> ConversationInfo:
        members = self._get_active_memberships(conversation.id)
        last_message = self._get_last_message(conversation)

        user_ids = {m.user_id for m in members}
        if last_message is not None:
            user_ids.add(last_message.sender_id)
        names = self.identity.display_names(user_ids)

        return ConversationInfo(
            id=conversation.id,
            kind=conversation.kind,
            status=conversation.status,
            name=conversation.name,
            description=conversation.description,
            created_by=conversation.created_by,
            members=[
                MemberInfo(
                    user_id=m.user_id,
                    display_name=names.get(m.user_id, m.user_id),
                    role=m.role,
                    joined_at=m.joined_at,
                    last_read_at=m.last_read_at,
                )
                for m in members
            ],
            last_message=(
                self._to_message_info(last_message, names) if last_message is not None else None
            ),
            unread_count=self.read_tracker.unread_count(conversation.id, user_id),
            is_archived=conversation.is_archived,
            is_active=conversation.is_active,
            last_activity_at=conversation.last_activity_at,
        )
