"""Tests for the users-table Identity Provider."""

from unittest.mock import MagicMock

import pytest

from chat_core.core.identity import SupabaseIdentityProvider, format_display_name


def _provider(rows: list[dict]) -> tuple[SupabaseIdentityProvider, MagicMock]:
    supabase = MagicMock()
    users_mock = supabase.table.return_value
    users_mock.select.return_value.in_.return_value.execute.return_value = MagicMock(data=rows)
    return SupabaseIdentityProvider(supabase), users_mock


class TestFormatDisplayName:
    @pytest.mark.parametrize(
        "row,expected",
        [
            ({"id": "u1", "username": "al", "first_name": "Alice", "last_name": "Martin"},
             "Alice Martin"),
            ({"id": "u1", "username": "al", "first_name": "Alice", "last_name": None}, "al"),
            ({"id": "u1", "username": None, "first_name": " ", "last_name": "Martin"}, "u1"),
        ],
    )
    def test_display_name_fallbacks(self, row, expected):
        assert format_display_name(row) == expected


class TestSupabaseIdentityProvider:
    def test_exists_and_active(self):
        provider, users_mock = _provider(
            [{"id": "u1", "username": "al", "first_name": None, "last_name": None, "is_active": True}]
        )

        assert provider.exists("u1") is True
        assert provider.is_active("u1") is True
        users_mock.select.return_value.in_.assert_called_with("id", ["u1"])

    def test_unknown_user(self):
        provider, _ = _provider([])

        assert provider.exists("u9") is False
        assert provider.is_active("u9") is False
        assert provider.display_name("u9") == "u9"

    def test_inactive_user(self):
        provider, _ = _provider(
            [{"id": "u1", "username": "al", "first_name": None, "last_name": None, "is_active": False}]
        )

        assert provider.exists("u1") is True
        assert provider.is_active("u1") is False

    def test_active_users_single_query(self):
        provider, users_mock = _provider(
            [
                {"id": "u1", "username": "al", "first_name": None, "last_name": None, "is_active": True},
                {"id": "u2", "username": "bo", "first_name": None, "last_name": None, "is_active": False},
            ]
        )

        active = provider.active_users(["u1", "u2", "u3", "u1"])

        assert active == {"u1"}
        users_mock.select.return_value.in_.assert_called_once_with("id", ["u1", "u2", "u3"])

    def test_display_names_batches_and_dedupes(self):
        provider, users_mock = _provider(
            [
                {"id": "u1", "username": "al", "first_name": "Alice", "last_name": "Martin"},
                {"id": "u2", "username": "bob", "first_name": None, "last_name": None},
            ]
        )

        names = provider.display_names(["u1", "u2", "u1"])

        assert names == {"u1": "Alice Martin", "u2": "bob"}
        users_mock.select.return_value.in_.assert_called_once_with("id", ["u1", "u2"])

    def test_display_names_empty_skips_query(self):
        provider, users_mock = _provider([])

        assert provider.display_names([]) == {}
        users_mock.select.assert_not_called()
