"""
Chat core error taxonomy.

Every service failure path raises exactly one of these. The six families
(NotFound, Forbidden, Conflict, InvalidState, Gone, Validation) are what the
outer request layer maps to status codes; the concrete subclasses say which
rule was violated.
"""


class ChatServiceError(Exception):
    """Base exception for chat core errors."""

    pass


# ===========================================
# Families
# ===========================================


class NotFoundError(ChatServiceError):
    """An entity id does not resolve."""

    pass


class ForbiddenError(ChatServiceError):
    """Caller lacks the membership or role for the action."""

    pass


class ConflictError(ChatServiceError):
    """The request duplicates existing state."""

    pass


class InvalidStateError(ChatServiceError):
    """The action is not valid for the entity's current status."""

    pass


class GoneError(ChatServiceError):
    """The action was possible once but its window has elapsed."""

    pass


class ValidationError(ChatServiceError):
    """Malformed input reached the core."""

    pass


# ===========================================
# Not found
# ===========================================


class ConversationNotFoundError(NotFoundError):
    """Conversation not found."""

    pass


class MessageNotFoundError(NotFoundError):
    """Message not found."""

    pass


class UserNotFoundError(NotFoundError):
    """User does not exist or is not active."""

    pass


# ===========================================
# Forbidden
# ===========================================


class NotConversationMemberError(ForbiddenError):
    """User is not an active member of this conversation."""

    pass


class InsufficientRoleError(ForbiddenError):
    """User's role does not allow this action."""

    pass


class NotMessageOwnerError(ForbiddenError):
    """User is not the sender of this message."""

    pass


# ===========================================
# Conflict
# ===========================================


class SelfConversationError(ConflictError):
    """A private conversation needs two distinct users."""

    pass


class MembersAlreadyPresentError(ConflictError):
    """Every requested user is already an active member."""

    pass


class ConcurrentModificationError(ConflictError):
    """Concurrent writers kept winning the compare-and-swap."""

    pass


# ===========================================
# Invalid state
# ===========================================


class ConversationStateError(InvalidStateError):
    """Conversation status does not allow this transition."""

    pass


class NotGroupError(InvalidStateError):
    """Action only applies to group conversations."""

    pass


class MemberNotActiveError(InvalidStateError):
    """Target user is not an active member."""

    pass


# ===========================================
# Gone
# ===========================================


class EditWindowExpiredError(GoneError):
    """Message is older than the edit window."""

    def __init__(self, message_id: str, window_hours: int):
        self.message_id = message_id
        self.window_hours = window_hours
        super().__init__(
            f"Message {message_id} is older than {window_hours} hours and can no longer be edited"
        )
