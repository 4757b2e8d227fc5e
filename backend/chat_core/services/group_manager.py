"""
Group management service.

Handles:
- Adding and removing members (admin/owner)
- Role changes (owner only; ownership itself is never assigned)
- Group settings (name, description)
- Leaving, with automatic ownership transfer and deactivation

Ownership transfer is applied by the leave_group_conversation() RPC so the
leave, the promotion and the deactivation commit together.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union

from postgrest.exceptions import APIError

from chat_core.core.constants import (
    GROUP_DESCRIPTION_MAX_LENGTH,
    GROUP_NAME_MAX_LENGTH,
    MAX_CAS_RETRIES,
    STALE_MEMBERSHIP_MARKER,
)
from chat_core.models.conversation import (
    ASSIGNABLE_ROLES,
    AddMembersResult,
    ConversationDB,
    GroupDetails,
    GroupPermissions,
    LeaveGroupResult,
    MemberInfo,
    MemberRole,
    MembershipDB,
    RemoveMemberResult,
    RoleUpdateResult,
    SettingsUpdateResult,
)
from chat_core.models.errors import (
    ConcurrentModificationError,
    ConversationNotFoundError,
    InsufficientRoleError,
    MemberNotActiveError,
    MembersAlreadyPresentError,
    NotConversationMemberError,
    NotGroupError,
    ValidationError,
)
from chat_core.models.notification import NotificationEvent, NotificationEventType
from chat_core.services.base import BaseChatService, is_unique_violation

logger = logging.getLogger(__name__)


def elect_successor(candidates: list[MembershipDB]) -> Optional[MembershipDB]:
    """
    Pick the next owner: the longest-tenured admin, else the longest-tenured
    member. Ties on joined_at break on membership id.
    """
    if not candidates:
        return None
    admins = [m for m in candidates if m.role == MemberRole.ADMIN]
    pool = admins or candidates
    return min(pool, key=lambda m: (m.joined_at, m.id))


def clean_group_name(name: Optional[str]) -> str:
    text = (name or "").strip()
    if not text:
        raise ValidationError("Group name is required")
    if len(text) > GROUP_NAME_MAX_LENGTH:
        raise ValidationError(f"Group name exceeds {GROUP_NAME_MAX_LENGTH} characters")
    return text


def clean_group_description(description: Optional[str]) -> Optional[str]:
    text = (description or "").strip()
    if len(text) > GROUP_DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"Group description exceeds {GROUP_DESCRIPTION_MAX_LENGTH} characters"
        )
    return text or None


class GroupManager(BaseChatService):
    """Service for group membership, roles and settings."""

    # =========================================================================
    # Public API
    # =========================================================================

    def add_members(
        self, conversation_id: str, actor_id: str, user_ids: list[str]
    ) -> AddMembersResult:
        """
        Add users to a group. Users already active are skipped.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            InsufficientRoleError: Actor is not an active admin or owner
            NotGroupError: Conversation is private
            ValidationError: No user ids given
            MembersAlreadyPresentError: Every requested user is already a member
            UserNotFoundError: A new user doesn't exist or is inactive
        """
        conversation = self._get_conversation(conversation_id)
        self._require_manager(conversation_id, actor_id)
        self._require_group(conversation)

        requested = list(dict.fromkeys(u for u in user_ids or [] if u))
        if not requested:
            raise ValidationError("At least one user id is required")

        active = {m.user_id for m in self._get_active_memberships(conversation_id)}
        to_add = [u for u in requested if u not in active]
        if not to_add:
            raise MembersAlreadyPresentError("All users are already members of this group")

        self._require_active_users(to_add)

        added = self._insert_memberships(conversation_id, to_add, actor_id)
        if not added:
            raise MembersAlreadyPresentError("All users are already members of this group")

        logger.info(
            "Added %d members to group %s",
            len(added),
            conversation_id,
            extra={"conversation_id": conversation_id, "user_id": actor_id},
        )

        return AddMembersResult(
            conversation_id=conversation_id, added_user_ids=added, added_count=len(added)
        )

    def remove_member(
        self, conversation_id: str, actor_id: str, target_user_id: str
    ) -> RemoveMemberResult:
        """
        Remove a member from a group. Only the owner may remove an owner, and
        a manager removing themself leaves through leave_group.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            InsufficientRoleError: Actor can't remove target
            NotGroupError: Conversation is private
            MemberNotActiveError: Target is not an active member
        """
        conversation = self._get_conversation(conversation_id)
        actor = self._require_manager(conversation_id, actor_id)
        self._require_group(conversation)

        if target_user_id == actor_id:
            self.leave_group(conversation_id, actor_id)
            return RemoveMemberResult(
                conversation_id=conversation_id, user_id=actor_id, message="Left group"
            )

        target = self._get_active_membership(conversation_id, target_user_id)
        if target is None:
            raise MemberNotActiveError(f"User {target_user_id} is not a member of this group")

        if target.role == MemberRole.OWNER and actor.role != MemberRole.OWNER:
            raise InsufficientRoleError("Only the owner can remove the owner")

        now = datetime.now(timezone.utc)
        result = (
            self.supabase.table("conversation_members")
            .update({"left_at": now.isoformat()})
            .eq("id", target.id)
            .is_("left_at", "null")
            .execute()
        )
        if not result.data:
            raise MemberNotActiveError(f"User {target_user_id} is not a member of this group")

        logger.info(
            "User %s removed from group %s by %s",
            target_user_id,
            conversation_id,
            actor_id,
            extra={"conversation_id": conversation_id, "user_id": target_user_id},
        )

        event = NotificationEvent(
            event=NotificationEventType.GROUP_MEMBER_LEFT,
            entity_ids={"conversation_id": conversation_id, "user_id": target_user_id},
            actor_id=actor_id,
            payload={"removed": True},
        )
        self._notify_conversation_safely(conversation_id, event)
        self._notify_user_safely(target_user_id, event)

        return RemoveMemberResult(conversation_id=conversation_id, user_id=target_user_id)

    def update_member_role(
        self,
        conversation_id: str,
        actor_id: str,
        target_user_id: str,
        new_role: Union[MemberRole, str],
    ) -> RoleUpdateResult:
        """
        Set a member's role to member or admin.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            InsufficientRoleError: Actor is not the active owner
            NotGroupError: Conversation is private
            ValidationError: Role is owner/unknown, or the owner targets themself
            MemberNotActiveError: Target is not an active member
        """
        conversation = self._get_conversation(conversation_id)
        actor = self._get_active_membership(conversation_id, actor_id)
        if actor is None or actor.role != MemberRole.OWNER:
            raise InsufficientRoleError("Only the owner can change member roles")
        self._require_group(conversation)

        try:
            role = MemberRole(new_role)
        except ValueError:
            raise ValidationError(f"Unknown role: {new_role}")
        if role not in ASSIGNABLE_ROLES:
            raise ValidationError("Ownership only changes hands when the owner leaves")

        if target_user_id == actor_id:
            raise ValidationError("The owner cannot change their own role")

        target = self._get_active_membership(conversation_id, target_user_id)
        if target is None:
            raise MemberNotActiveError(f"User {target_user_id} is not a member of this group")

        if target.role != role:
            result = (
                self.supabase.table("conversation_members")
                .update({"role": role.value})
                .eq("id", target.id)
                .is_("left_at", "null")
                .execute()
            )
            if not result.data:
                raise MemberNotActiveError(
                    f"User {target_user_id} is not a member of this group"
                )
            logger.info(
                "User %s is now %s in group %s",
                target_user_id,
                role.value,
                conversation_id,
                extra={"conversation_id": conversation_id, "user_id": target_user_id},
            )

        return RoleUpdateResult(conversation_id=conversation_id, user_id=target_user_id, role=role)

    def update_settings(
        self,
        conversation_id: str,
        actor_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> SettingsUpdateResult:
        """
        Change a group's name and/or description. An empty description
        clears it; a blank name is ignored.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            InsufficientRoleError: Actor is not an active admin or owner
            NotGroupError: Conversation is private
            ValidationError: Nothing changes, or a value is too long
        """
        conversation = self._get_conversation(conversation_id)
        self._require_manager(conversation_id, actor_id)
        self._require_group(conversation)

        changes: dict[str, Optional[str]] = {}
        if name is not None and name.strip():
            clean_name = clean_group_name(name)
            if clean_name != conversation.name:
                changes["name"] = clean_name
        if description is not None:
            clean_description = clean_group_description(description)
            if clean_description != conversation.description:
                changes["description"] = clean_description

        if not changes:
            raise ValidationError("No valid changes provided")

        self.supabase.table("conversations").update(changes).eq("id", conversation_id).execute()

        logger.info(
            "Group %s settings updated: %s",
            conversation_id,
            ", ".join(sorted(changes)),
            extra={"conversation_id": conversation_id, "user_id": actor_id},
        )

        return SettingsUpdateResult(conversation_id=conversation_id, updated=changes)

    def leave_group(self, conversation_id: str, user_id: str) -> LeaveGroupResult:
        """
        Leave a group. If the leaver is the owner and others remain, the
        elected successor becomes owner; if nobody remains the group is
        deactivated.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            NotGroupError: Conversation is private
            NotConversationMemberError: User is not an active member
            ConcurrentModificationError: Membership kept changing underneath
        """
        for attempt in range(MAX_CAS_RETRIES):
            conversation = self._get_conversation(conversation_id)
            self._require_group(conversation)

            members = self._get_active_memberships(conversation_id)
            leaving = next((m for m in members if m.user_id == user_id), None)
            if leaving is None:
                raise NotConversationMemberError("You are not a member of this group")

            successor = None
            if leaving.role == MemberRole.OWNER:
                successor = elect_successor([m for m in members if m.user_id != user_id])

            try:
                result = self.supabase.rpc(
                    "leave_group_conversation",
                    {
                        "p_conversation_id": conversation_id,
                        "p_user_id": user_id,
                        "p_new_owner_id": successor.user_id if successor else None,
                    },
                ).execute()
            except APIError as e:
                message = e.message or ""
                if STALE_MEMBERSHIP_MARKER in message:
                    logger.warning(
                        "Stale membership leaving group %s (attempt %d): %s",
                        conversation_id,
                        attempt + 1,
                        message,
                    )
                    continue
                if "CONVERSATION_NOT_FOUND" in message:
                    raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
                raise

            row = result.data[0] if result.data else {}
            new_owner_id = row.get("new_owner_id")
            still_active = row.get("conversation_active", True)

            if new_owner_id:
                logger.info(
                    "Ownership of group %s transferred from %s to %s",
                    conversation_id,
                    user_id,
                    new_owner_id,
                    extra={"conversation_id": conversation_id, "user_id": new_owner_id},
                )
            if not still_active:
                logger.info(
                    "Group %s deactivated, last member left",
                    conversation_id,
                    extra={"conversation_id": conversation_id},
                )

            self._notify_conversation_safely(
                conversation_id,
                NotificationEvent(
                    event=NotificationEventType.GROUP_MEMBER_LEFT,
                    entity_ids={"conversation_id": conversation_id, "user_id": user_id},
                    actor_id=user_id,
                    payload={"new_owner_id": new_owner_id},
                ),
            )

            return LeaveGroupResult(
                conversation_id=conversation_id,
                new_owner_id=new_owner_id,
                conversation_active=still_active,
            )

        raise ConcurrentModificationError(
            f"Group {conversation_id} membership changed concurrently, please retry"
        )

    def get_details(self, conversation_id: str, user_id: str) -> GroupDetails:
        """
        Group metadata, members and the caller's permissions.

        Raises:
            ConversationNotFoundError: Conversation doesn't exist
            NotGroupError: Conversation is private
            NotConversationMemberError: Caller is not an active member
        """
        conversation = self._get_conversation(conversation_id)
        self._require_group(conversation)

        members = self._get_active_memberships(conversation_id)
        me = next((m for m in members if m.user_id == user_id), None)
        if me is None:
            raise NotConversationMemberError("You are not a member of this group")

        names = self.identity.display_names(m.user_id for m in members)

        return GroupDetails(
            id=conversation.id,
            name=conversation.name,
            description=conversation.description,
            created_at=conversation.created_at,
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
            current_user_role=me.role,
            permissions=GroupPermissions.for_role(me.role),
        )

    # =========================================================================
    # Private Helpers
    # =========================================================================

    @staticmethod
    def _require_group(conversation: ConversationDB) -> None:
        if not conversation.is_group:
            raise NotGroupError("This action only applies to group conversations")

    def _require_manager(self, conversation_id: str, user_id: str) -> MembershipDB:
        membership = self._get_active_membership(conversation_id, user_id)
        if membership is None or not membership.role.can_manage():
            raise InsufficientRoleError("Only admins and the owner can manage this group")
        return membership

    def _insert_memberships(
        self, conversation_id: str, user_ids: list[str], invited_by: str
    ) -> list[str]:
        """
        Insert member rows; returns the user ids actually added.

        A batch that trips the active-membership unique index (a concurrent
        add) is retried row by row, skipping users that are already in.
        """
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            {
                "conversation_id": conversation_id,
                "user_id": uid,
                "role": MemberRole.MEMBER.value,
                "joined_at": now,
                "invited_by": invited_by,
            }
            for uid in user_ids
        ]

        try:
            self.supabase.table("conversation_members").insert(rows).execute()
            return list(user_ids)
        except APIError as e:
            if not is_unique_violation(e):
                raise
            logger.debug("Concurrent member add on %s, inserting individually", conversation_id)

        added = []
        for row in rows:
            try:
                self.supabase.table("conversation_members").insert(row).execute()
            except APIError as e:
                if not is_unique_violation(e):
                    raise
                continue
            added.append(row["user_id"])
        return added
