"""
Pruebas de los filtros de chats autorizados y administradores.
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest

import config
from auth_filters import _chat_id, admin_filter, allowed_chat_filter, is_admin, is_allowed_chat
from conftest import MockMessage, MockUser


def callback_query(chat_id: int, user_id: int):
    message = MockMessage(text="menú")
    message.chat.id = chat_id
    return SimpleNamespace(message=message, from_user=MockUser(user_id), data="accion:start")


class TestChatId:
    def test_message(self):
        assert _chat_id(MockMessage()) == -100123

    def test_callback_query(self):
        assert _chat_id(callback_query(-555, 1)) == -555

    def test_without_chat(self):
        assert _chat_id(SimpleNamespace()) is None


class TestAllowedChat:
    def test_empty_set_allows_everyone(self):
        with patch.object(config, "ALLOWED_CHAT_IDS", set()):
            assert is_allowed_chat(-1)
            assert is_allowed_chat(None)

    def test_configured_set(self):
        with patch.object(config, "ALLOWED_CHAT_IDS", {-100123}):
            assert is_allowed_chat(-100123)
            assert not is_allowed_chat(-999)

    @pytest.mark.asyncio
    async def test_filter(self, mock_client):
        with patch.object(config, "ALLOWED_CHAT_IDS", {-100123}):
            assert await allowed_chat_filter(mock_client, MockMessage()) is True
            assert await allowed_chat_filter(mock_client, callback_query(-999, 1)) is False


class TestAdmin:
    def test_empty_set_allows_everyone(self):
        with patch.object(config, "ADMIN_USER_IDS", set()):
            assert is_admin(42)

    def test_configured_set(self):
        with patch.object(config, "ADMIN_USER_IDS", {7}):
            assert is_admin(7)
            assert not is_admin(8)
            assert not is_admin(None)

    @pytest.mark.asyncio
    async def test_filter(self, mock_client):
        with patch.object(config, "ADMIN_USER_IDS", {7}):
            assert await admin_filter(mock_client, MockMessage(from_user=MockUser(7))) is True
            assert await admin_filter(mock_client, callback_query(-100123, 8)) is False
