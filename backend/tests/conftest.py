"""Shared pytest fixtures for test suite."""

import itertools
import os
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Iterable, Optional
from unittest.mock import MagicMock

import pytest

# Settings validate required secrets; give the unit suite harmless values
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")

from chat_core.models.notification import NotificationEvent  # noqa: E402

# =============================================================================
# Collaborator fakes
# =============================================================================


class RecordingNotifier:
    """Notifier that keeps every event it is asked to deliver."""

    def __init__(self) -> None:
        self.user_events: list[tuple[str, NotificationEvent]] = []
        self.conversation_events: list[tuple[str, NotificationEvent]] = []

    def notify_user(self, user_id: str, event: NotificationEvent) -> None:
        self.user_events.append((user_id, event))

    def notify_conversation(self, conversation_id: str, event: NotificationEvent) -> None:
        self.conversation_events.append((conversation_id, event))

    def event_names(self) -> list[str]:
        return [e.event.value for _, e in self.user_events + self.conversation_events]


class FailingNotifier:
    """Notifier whose transport is down."""

    def notify_user(self, user_id: str, event: NotificationEvent) -> None:
        raise ConnectionError("redis unavailable")

    def notify_conversation(self, conversation_id: str, event: NotificationEvent) -> None:
        raise ConnectionError("redis unavailable")


class FakeIdentity:
    """In-memory Identity Provider: {user_id: (display_name, is_active)}."""

    def __init__(self, users: Optional[dict[str, tuple[str, bool]]] = None) -> None:
        self.users = users or {}
        self.active_lookups = 0

    def exists(self, user_id: str) -> bool:
        return user_id in self.users

    def is_active(self, user_id: str) -> bool:
        return user_id in self.users and self.users[user_id][1]

    def display_name(self, user_id: str) -> str:
        return self.users.get(user_id, (user_id, False))[0]

    def display_names(self, user_ids: Iterable[str]) -> dict[str, str]:
        return {uid: self.users[uid][0] for uid in user_ids if uid in self.users}

    def active_users(self, user_ids: Iterable[str]) -> set[str]:
        self.active_lookups += 1
        return {uid for uid in user_ids if self.is_active(uid)}


# =============================================================================
# In-memory Supabase
# =============================================================================

_ROW_DEFAULTS = {
    "conversations": {
        "status": "accepted",
        "name": None,
        "description": None,
        "pair_key": None,
        "last_message_id": None,
        "is_archived": False,
        "is_active": True,
    },
    "conversation_members": {
        "role": "member",
        "left_at": None,
        "invited_by": None,
        "last_read_message_id": None,
        "last_read_at": None,
        "is_muted": False,
        "notifications_enabled": True,
    },
    "messages": {
        "type": "text",
        "status": "sent",
        "is_edited": False,
        "edited_at": None,
        "reply_to_id": None,
        "metadata": None,
    },
    "message_reads": {},
}

_TIMESTAMP_COLUMNS = {
    "conversations": ("created_at", "last_activity_at"),
    "conversation_members": ("joined_at",),
    "messages": ("created_at",),
    "message_reads": ("read_at",),
}


class FakeQuery:
    """The subset of the PostgREST query builder the services use."""

    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self.action = "select"
        self.payload = None
        self.filters = []
        self.ordering = []
        self.window = None

    def select(self, *columns, **kwargs):
        return self

    def insert(self, payload):
        self.action, self.payload = "insert", payload
        return self

    def update(self, changes):
        self.action, self.payload = "update", changes
        return self

    def delete(self):
        self.action = "delete"
        return self

    def _where(self, predicate):
        self.filters.append(predicate)
        return self

    def eq(self, column, value):
        return self._where(lambda row: row.get(column) == value)

    def neq(self, column, value):
        return self._where(lambda row: row.get(column) != value)

    def is_(self, column, value):
        return self._where(lambda row: row.get(column) is None)

    def in_(self, column, values):
        values = list(values)
        return self._where(lambda row: row.get(column) in values)

    def lt(self, column, value):
        return self._where(lambda row: row.get(column) < value)

    def gt(self, column, value):
        return self._where(lambda row: row.get(column) > value)

    def lte(self, column, value):
        return self._where(lambda row: row.get(column) <= value)

    def order(self, column, desc=False):
        self.ordering.append((column, desc))
        return self

    def range(self, start, end):
        self.window = (start, end + 1)
        return self

    def limit(self, count):
        self.window = (0, count)
        return self

    def execute(self):
        if self.action == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            return SimpleNamespace(data=[dict(self.db.insert(self.table, i)) for i in items])

        rows = self.db.tables[self.table]
        matched = [row for row in rows if all(f(row) for f in self.filters)]

        if self.action == "update":
            for row in matched:
                row.update(self.payload)
        elif self.action == "delete":
            gone = {id(row) for row in matched}
            self.db.tables[self.table] = [row for row in rows if id(row) not in gone]
        else:
            for column, desc in reversed(self.ordering):
                matched.sort(key=lambda row: str(row.get(column) or ""), reverse=desc)
            if self.window is not None:
                matched = matched[self.window[0] : self.window[1]]

        return SimpleNamespace(data=[dict(row) for row in matched])


class FakeSupabase:
    """Stateful stand-in for the Supabase client, tables and RPCs included."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict]] = {name: [] for name in _ROW_DEFAULTS}
        self._ids = itertools.count(1)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def insert(self, table: str, values: dict) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        row = {"id": f"{table}-{next(self._ids)}", **_ROW_DEFAULTS[table]}
        for column in _TIMESTAMP_COLUMNS[table]:
            row[column] = now
        row.update(values)
        self.tables[table].append(row)
        return row

    def rpc(self, name: str, params: dict):
        handler = getattr(self, f"_rpc_{name}")
        return SimpleNamespace(execute=lambda: SimpleNamespace(data=handler(**params)))

    # --- database functions ---

    def _has_receipt(self, message_id: str, user_id: str) -> bool:
        return any(
            r["message_id"] == message_id and r["user_id"] == user_id
            for r in self.tables["message_reads"]
        )

    def _from_others(self, conversation_id: str, user_id: str, through=None) -> list[dict]:
        rows = [
            m
            for m in self.tables["messages"]
            if m["conversation_id"] == conversation_id
            and m["sender_id"] != user_id
            and (through is None or m["created_at"] <= through)
        ]
        return sorted(rows, key=lambda m: m["created_at"])

    def _rpc_conversation_unread_count(self, p_conversation_id, p_user_id):
        return sum(
            1
            for m in self._from_others(p_conversation_id, p_user_id)
            if not self._has_receipt(m["id"], p_user_id)
        )

    def _rpc_unread_messages(self, p_conversation_id, p_user_id, p_limit, p_offset=0):
        unread = [
            dict(m)
            for m in self._from_others(p_conversation_id, p_user_id)
            if not self._has_receipt(m["id"], p_user_id)
        ]
        return unread[p_offset : p_offset + p_limit]

    def _rpc_mark_conversation_read(self, p_conversation_id, p_user_id, p_through=None):
        now = datetime.now(timezone.utc).isoformat()
        candidates = self._from_others(p_conversation_id, p_user_id, p_through)
        marked = []
        for message in candidates:
            if self._has_receipt(message["id"], p_user_id):
                continue
            self.insert(
                "message_reads",
                {"message_id": message["id"], "user_id": p_user_id, "read_at": now},
            )
            message["status"] = "read"
            marked.append(message["id"])

        last_id = candidates[-1]["id"] if candidates else None
        if last_id is not None:
            for member in self.tables["conversation_members"]:
                if (
                    member["conversation_id"] == p_conversation_id
                    and member["user_id"] == p_user_id
                    and member["left_at"] is None
                ):
                    member.update({"last_read_message_id": last_id, "last_read_at": now})

        return [
            {
                "marked_message_ids": marked,
                "total_processed": len(candidates),
                "last_message_id": last_id,
                "marked_at": now,
            }
        ]

    def _rpc_create_private_conversation(self, p_requester_id, p_other_id, p_pair_key):
        conversation = self.insert(
            "conversations",
            {
                "kind": "private",
                "status": "pending",
                "created_by": p_requester_id,
                "pair_key": p_pair_key,
            },
        )
        for user_id in (p_requester_id, p_other_id):
            self.insert(
                "conversation_members",
                {"conversation_id": conversation["id"], "user_id": user_id},
            )
        return [dict(conversation)]

    def _rpc_list_user_conversations(
        self, p_user_id, p_statuses=None, p_include_archived=False, p_limit=20, p_offset=0
    ):
        member_of = {
            m["conversation_id"]
            for m in self.tables["conversation_members"]
            if m["user_id"] == p_user_id and m["left_at"] is None
        }
        rows = [
            dict(c)
            for c in self.tables["conversations"]
            if c["id"] in member_of
            and c["is_active"]
            and (p_include_archived or not c["is_archived"])
            and (p_statuses is None or c["status"] in p_statuses)
        ]
        rows.sort(key=lambda c: c["last_activity_at"], reverse=True)
        return rows[p_offset : p_offset + p_limit]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def failing_notifier() -> FailingNotifier:
    return FailingNotifier()


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity(
        {
            "user-a": ("Alice Martin", True),
            "user-b": ("Bob Stone", True),
            "user-c": ("carol", True),
            "user-d": ("dave", True),
            "user-inactive": ("ghost", False),
        }
    )


@pytest.fixture
def mock_supabase():
    """Mock Supabase client with table-specific routing."""
    mock = MagicMock()

    tables = {
        "conversations": MagicMock(),
        "conversation_members": MagicMock(),
        "messages": MagicMock(),
        "message_reads": MagicMock(),
        "users": MagicMock(),
    }

    def table_router(name):
        return tables.setdefault(name, MagicMock())

    mock.table.side_effect = table_router
    mock.tables = tables
    return mock


@pytest.fixture
def fake_supabase() -> FakeSupabase:
    """Stateful in-memory Supabase for scenarios spanning several calls."""
    return FakeSupabase()
