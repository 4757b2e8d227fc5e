"""Tests for create_chat_services() collaborator wiring."""

from unittest.mock import MagicMock, patch

import pytest

from chat_core.core.notifier import NullNotifier
from chat_core.services import ChatServices, create_chat_services


@pytest.mark.unit
def test_services_share_collaborators(mock_supabase, notifier, identity):
    services = create_chat_services(supabase=mock_supabase, notifier=notifier, identity=identity)

    assert isinstance(services, ChatServices)
    assert services.conversations.read_tracker is services.reads
    assert services.conversations.group_manager is services.groups
    assert services.messages.read_tracker is services.reads
    for service in (services.conversations, services.groups, services.messages, services.reads):
        assert service.supabase is mock_supabase
        assert service.notifier is notifier
        assert service.identity is identity


@pytest.mark.unit
@patch("chat_core.services.get_notifier")
def test_missing_notifier_uses_process_default(mock_get_notifier, mock_supabase, identity):
    mock_get_notifier.return_value = NullNotifier()

    services = create_chat_services(supabase=mock_supabase, identity=identity)

    mock_get_notifier.assert_called_once()
    assert services.messages.notifier is mock_get_notifier.return_value


@pytest.mark.unit
@patch("chat_core.services.get_notifier", return_value=MagicMock())
def test_missing_identity_reads_users_table(_mock_get_notifier, mock_supabase):
    services = create_chat_services(supabase=mock_supabase)

    assert services.reads.identity.supabase is mock_supabase
