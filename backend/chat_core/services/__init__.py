"""Business logic services for the chat core."""

from dataclasses import dataclass
from typing import Optional

from supabase import Client

from chat_core.core.identity import IdentityProvider, SupabaseIdentityProvider
from chat_core.core.notifier import Notifier, get_notifier
from chat_core.services.conversation_service import ConversationService
from chat_core.services.group_manager import GroupManager
from chat_core.services.message_service import MessageService
from chat_core.services.read_tracker import ReadTracker


@dataclass
class ChatServices:
    """The four chat services sharing one set of collaborators."""

    conversations: ConversationService
    groups: GroupManager
    messages: MessageService
    reads: ReadTracker


def create_chat_services(
    supabase: Optional[Client] = None,
    notifier: Optional[Notifier] = None,
    identity: Optional[IdentityProvider] = None,
) -> ChatServices:
    """
    Wire the services together. Missing collaborators fall back to the
    process defaults (get_supabase(), get_notifier(), users-table identity).
    """
    notifier = notifier if notifier is not None else get_notifier()
    identity = identity if identity is not None else SupabaseIdentityProvider(supabase)

    reads = ReadTracker(supabase=supabase, notifier=notifier, identity=identity)
    groups = GroupManager(supabase=supabase, notifier=notifier, identity=identity)
    return ChatServices(
        conversations=ConversationService(
            supabase=supabase,
            notifier=notifier,
            identity=identity,
            read_tracker=reads,
            group_manager=groups,
        ),
        groups=groups,
        messages=MessageService(
            supabase=supabase, notifier=notifier, identity=identity, read_tracker=reads
        ),
        reads=reads,
    )


__all__ = [
    "ChatServices",
    "ConversationService",
    "GroupManager",
    "MessageService",
    "ReadTracker",
    "create_chat_services",
]
