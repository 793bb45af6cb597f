"""
Filtros de Pyrogram para restringir el bot a los chats y usuarios autorizados.

Uso:
    from auth_filters import allowed_chat_filter, admin_filter

    @app.on_message(filters.command("importar") & allowed_chat_filter & admin_filter)
    async def importar(client, message):
        pass
"""

import logging

from pyrogram import filters

import config

logger = logging.getLogger(__name__)


def _chat_id(update) -> int | None:
    # Message o CallbackQuery
    message = getattr(update, "message", None) or update
    chat = getattr(message, "chat", None)
    return getattr(chat, "id", None)


def is_allowed_chat(chat_id: int | None) -> bool:
    """Sin ALLOWED_CHAT_IDS configurado se aceptan todos los chats."""
    if not config.ALLOWED_CHAT_IDS:
        return True
    return chat_id in config.ALLOWED_CHAT_IDS


def is_admin(user_id: int | None) -> bool:
    """Sin ADMIN_USER_IDS configurado cualquier usuario es administrador."""
    if not config.ADMIN_USER_IDS:
        return True
    return user_id in config.ADMIN_USER_IDS


async def _check_chat(flt, client, update):
    chat_id = _chat_id(update)
    if is_allowed_chat(chat_id):
        return True
    logger.debug(f"Chat no autorizado: {chat_id}")
    return False


async def _check_admin(flt, client, update):
    user = getattr(update, "from_user", None)
    user_id = getattr(user, "id", None)
    if is_admin(user_id):
        return True
    logger.info(f"Acción de administrador denegada al usuario {user_id}")
    return False


allowed_chat_filter = filters.create(_check_chat, name="AllowedChat")
admin_filter = filters.create(_check_admin, name="Admin")
