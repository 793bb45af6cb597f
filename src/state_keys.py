"""
Claves de contexto y mapas de estado de conversación.

Un contexto es un chat o un tema (thread) dentro de un grupo con temas.
Las claves tienen la forma "chat" o "chat:thread"; los formularios de varios
pasos agregan el usuario delante: "user:chat[:thread]".
"""

import random
import string
import threading
import time
from typing import Any, Iterator


def normalize_id(value: Any) -> str | None:
    """Convierte un identificador a str; vacío o None devuelve None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def get_context_key(chat_id: int | str, thread_id: int | str | None = None) -> str:
    """
    Construye la clave de contexto para un chat y un tema opcional.

    Args:
        chat_id: ID del chat
        thread_id: ID del tema (message_thread_id) o None

    Returns:
        str: "chat" o "chat:thread"
    """
    chat = normalize_id(chat_id)
    if chat is None:
        raise ValueError("chat_id es obligatorio para construir la clave de contexto")
    thread = normalize_id(thread_id)
    return f"{chat}:{thread}" if thread else chat


def parse_context_key(key: str) -> tuple[str, str | None]:
    """Separa una clave de contexto en (chat_id, thread_id)."""
    parts = key.split(":", 1)
    if len(parts) == 2:
        return parts[0], parts[1] or None
    return parts[0], None


def is_valid_context_key(key: Any) -> bool:
    if not isinstance(key, str) or not key:
        return False
    parts = key.split(":")
    if len(parts) > 2:
        return False
    return bool(parts[0])


def get_thread_id(message: Any) -> int | None:
    """Extrae el tema de un Message de pyrogram (si existe)."""
    return (
        getattr(message, "message_thread_id", None)
        or getattr(message, "reply_to_top_message_id", None)
        or None
    )


def get_user_state_key(user_id: int | str, chat_id: int | str, thread_id: int | str | None = None) -> str:
    """Clave de formulario por usuario dentro de un contexto."""
    return f"{user_id}:{get_context_key(chat_id, thread_id)}"


def generate_temp_key(prefix: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{prefix}:{int(time.time() * 1000)}:{suffix}"


class ThreadSafeStateMap:
    """
    Mapa en memoria protegido por lock.

    Las operaciones que reciben chat_id afectan a todas las claves cuyo primer
    segmento sea ese chat (cualquier tema).
    """

    def __init__(self):
        self._data: dict[str, Any] = {}
        self._lock = threading.RLock()

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            del self._data[key]
            return True

    def _keys_for_chat(self, chat_id: int | str) -> list[str]:
        chat = str(chat_id)
        return [k for k in self._data if k == chat or k.startswith(f"{chat}:")]

    def delete_all(self, chat_id: int | str) -> int:
        """Elimina todas las entradas de un chat. Devuelve cuántas se borraron."""
        with self._lock:
            keys = self._keys_for_chat(chat_id)
            for key in keys:
                del self._data[key]
            return len(keys)

    def get_all_by_chat_id(self, chat_id: int | str) -> dict[str, Any]:
        with self._lock:
            return {k: self._data[k] for k in self._keys_for_chat(chat_id)}

    def items(self) -> list[tuple[str, Any]]:
        with self._lock:
            return list(self._data.items())

    def size(self) -> int:
        with self._lock:
            return len(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __iter__(self) -> Iterator[str]:
        return iter([k for k, _ in self.items()])
