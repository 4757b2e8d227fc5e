"""Identity Provider collaborators.

The chat core never owns user accounts; it only asks whether an id exists,
whether it is active, and how to display it.
"""

from typing import Iterable, Optional, Protocol

from supabase import Client

from chat_core.core.constants import USER_PROFILE_FIELDS
from chat_core.core.database import get_supabase


class IdentityProvider(Protocol):
    """Read-only view of user accounts."""

    def exists(self, user_id: str) -> bool: ...

    def is_active(self, user_id: str) -> bool: ...

    def display_name(self, user_id: str) -> str: ...

    def display_names(self, user_ids: Iterable[str]) -> dict[str, str]: ...

    def active_users(self, user_ids: Iterable[str]) -> set[str]: ...


def format_display_name(row: dict) -> str:
    """Full name when both parts are set, username otherwise."""
    first = (row.get("first_name") or "").strip()
    last = (row.get("last_name") or "").strip()
    if first and last:
        return f"{first} {last}"
    return row.get("username") or row["id"]


class SupabaseIdentityProvider:
    """Identity Provider backed by the `users` table."""

    def __init__(self, supabase: Optional[Client] = None) -> None:
        self._supabase = supabase

    @property
    def supabase(self) -> Client:
        if self._supabase is None:
            self._supabase = get_supabase()
        return self._supabase

    def _fetch(self, user_ids: list[str]) -> dict[str, dict]:
        if not user_ids:
            return {}
        result = (
            self.supabase.table("users").select(USER_PROFILE_FIELDS).in_("id", user_ids).execute()
        )
        return {row["id"]: row for row in result.data or []}

    def exists(self, user_id: str) -> bool:
        return user_id in self._fetch([user_id])

    def is_active(self, user_id: str) -> bool:
        row = self._fetch([user_id]).get(user_id)
        return bool(row and row.get("is_active", True))

    def display_name(self, user_id: str) -> str:
        row = self._fetch([user_id]).get(user_id)
        return format_display_name(row) if row else user_id

    def display_names(self, user_ids: Iterable[str]) -> dict[str, str]:
        """Map of user_id -> display name. Unknown ids are omitted."""
        rows = self._fetch(list(dict.fromkeys(user_ids)))
        return {uid: format_display_name(row) for uid, row in rows.items()}

    def active_users(self, user_ids: Iterable[str]) -> set[str]:
        """The subset of user_ids that exist and are active, in one query."""
        rows = self._fetch(list(dict.fromkeys(user_ids)))
        return {uid for uid, row in rows.items() if row.get("is_active", True)}
