"""
Conversation and membership models.

A membership is soft-left by stamping `left_at`; the row stays as history
and a later re-join inserts a fresh row.
"""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from chat_core.models.message import MessageInfo

# ===========================================
# Enums
# ===========================================


class ConversationKind(str, Enum):
    """Type of conversation."""

    PRIVATE = "private"
    GROUP = "group"


class ConversationStatus(str, Enum):
    """Request-flow status. Groups are created accepted."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class MemberRole(str, Enum):
    """Role of a member inside a conversation."""

    MEMBER = "member"
    ADMIN = "admin"
    OWNER = "owner"

    def can_manage(self) -> bool:
        """Admins and the owner may add/remove members and edit settings."""
        return self in (MemberRole.ADMIN, MemberRole.OWNER)


# Roles assignable through GroupManager.update_member_role
ASSIGNABLE_ROLES = frozenset({MemberRole.MEMBER, MemberRole.ADMIN})


def make_pair_key(user_a_id: str, user_b_id: str) -> str:
    """Order-independent key identifying the private conversation of two users."""
    first, second = sorted((user_a_id, user_b_id))
    return f"{first}:{second}"


# ===========================================
# DB Models
# ===========================================


class ConversationDB(BaseModel):
    """Raw row from the conversations table."""

    id: str
    kind: ConversationKind
    status: ConversationStatus = ConversationStatus.ACCEPTED
    name: Optional[str] = None
    description: Optional[str] = None
    created_by: str
    pair_key: Optional[str] = None
    last_message_id: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    is_archived: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None

    @property
    def is_group(self) -> bool:
        return self.kind == ConversationKind.GROUP


class MembershipDB(BaseModel):
    """Raw row from the conversation_members table."""

    id: str
    conversation_id: str
    user_id: str
    role: MemberRole = MemberRole.MEMBER
    joined_at: datetime
    left_at: Optional[datetime] = None
    invited_by: Optional[str] = None
    last_read_message_id: Optional[str] = None
    last_read_at: Optional[datetime] = None
    is_muted: bool = False
    notifications_enabled: bool = True

    @property
    def is_active(self) -> bool:
        return self.left_at is None

    @property
    def has_left(self) -> bool:
        return self.left_at is not None


# ===========================================
# Response Models
# ===========================================


class MemberInfo(BaseModel):
    """An active member with display fields and read state."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    display_name: Optional[str] = None
    role: MemberRole = MemberRole.MEMBER
    joined_at: datetime
    last_read_at: Optional[datetime] = None


class ConversationInfo(BaseModel):
    """A conversation as seen by one user."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: ConversationKind
    status: ConversationStatus
    name: Optional[str] = None
    description: Optional[str] = None
    created_by: str
    members: list[MemberInfo] = Field(default_factory=list)
    last_message: Optional[MessageInfo] = None
    unread_count: int = 0
    is_archived: bool = False
    is_active: bool = True
    last_activity_at: Optional[datetime] = None


class ConversationListResponse(BaseModel):
    """A page of a user's conversations, most recent activity first."""

    conversations: list[ConversationInfo]
    has_more: bool = False


class GroupPermissions(BaseModel):
    """What the caller may do in a group, derived from their role."""

    can_add_members: bool = False
    can_remove_members: bool = False
    can_update_settings: bool = False
    can_update_roles: bool = False

    @classmethod
    def for_role(cls, role: MemberRole) -> "GroupPermissions":
        manage = role.can_manage()
        return cls(
            can_add_members=manage,
            can_remove_members=manage,
            can_update_settings=manage,
            can_update_roles=role == MemberRole.OWNER,
        )


class GroupDetails(BaseModel):
    """Group metadata, member list and the caller's permissions."""

    id: str
    kind: ConversationKind = ConversationKind.GROUP
    name: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    members: list[MemberInfo] = Field(default_factory=list)
    current_user_role: MemberRole
    permissions: GroupPermissions


class AddMembersResult(BaseModel):
    """Response after adding members to a group."""

    conversation_id: str
    added_user_ids: list[str]
    added_count: int


class RemoveMemberResult(BaseModel):
    """Response after removing a member from a group."""

    conversation_id: str
    user_id: str
    message: str = "Member removed"


class RoleUpdateResult(BaseModel):
    """Response after changing a member's role."""

    conversation_id: str
    user_id: str
    role: MemberRole


class SettingsUpdateResult(BaseModel):
    """Response after editing group settings."""

    conversation_id: str
    updated: dict[str, Optional[str]]


class LeaveGroupResult(BaseModel):
    """Response after leaving a group."""

    conversation_id: str
    action: Literal["left"] = "left"
    new_owner_id: Optional[str] = None
    conversation_active: bool = True


class ArchiveConversationResult(BaseModel):
    """Response after a user hides a private conversation for themselves."""

    conversation_id: str
    action: Literal["archived"] = "archived"
    kind: ConversationKind = ConversationKind.PRIVATE
