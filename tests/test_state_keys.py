"""
Pruebas de claves de contexto y ThreadSafeStateMap.
"""

import threading

import pytest

from state_keys import (
    ThreadSafeStateMap,
    generate_temp_key,
    get_context_key,
    get_thread_id,
    get_user_state_key,
    is_valid_context_key,
    normalize_id,
    parse_context_key,
)
from conftest import MockMessage


class TestContextKeys:
    def test_key_without_thread(self):
        assert get_context_key(-100123) == "-100123"

    def test_key_with_thread(self):
        assert get_context_key(-100123, 45) == "-100123:45"

    def test_empty_thread_is_ignored(self):
        assert get_context_key("-100123", "  ") == "-100123"

    def test_missing_chat_raises(self):
        with pytest.raises(ValueError):
            get_context_key(None)

    def test_parse_roundtrip_pairs(self):
        assert parse_context_key("-100123:45") == ("-100123", "45")
        assert parse_context_key("-100123") == ("-100123", None)

    def test_user_state_key(self):
        assert get_user_state_key(7, -100, 3) == "7:-100:3"
        assert get_user_state_key(7, -100) == "7:-100"

    def test_valid_keys(self):
        assert is_valid_context_key("-100")
        assert is_valid_context_key("-100:5")
        assert not is_valid_context_key("")
        assert not is_valid_context_key("a:b:c")
        assert not is_valid_context_key(None)

    def test_normalize_id(self):
        assert normalize_id(None) is None
        assert normalize_id(" 12 ") == "12"
        assert normalize_id("") is None

    def test_temp_key_prefix(self):
        key = generate_temp_key("upload")
        assert key.startswith("upload:")
        assert len(key.split(":")) == 3

    def test_thread_id_from_message(self):
        assert get_thread_id(MockMessage(thread_id=9)) == 9
        msg = MockMessage()
        msg.reply_to_top_message_id = 11
        assert get_thread_id(msg) == 11
        assert get_thread_id(MockMessage()) is None


class TestThreadSafeStateMap:
    def test_basic_operations(self):
        state = ThreadSafeStateMap()
        state.set("a", 1)
        assert state.get("a") == 1
        assert state.has("a")
        assert "a" in state
        assert state.delete("a") is True
        assert state.delete("a") is False
        assert state.get("a", "x") == "x"

    def test_delete_all_by_chat(self):
        state = ThreadSafeStateMap()
        state.set("-100", 1)
        state.set("-100:5", 2)
        state.set("-1001", 3)
        assert state.get_all_by_chat_id(-100) == {"-100": 1, "-100:5": 2}
        assert state.delete_all(-100) == 2
        assert state.size() == 1
        assert state.has("-1001")

    def test_items_is_snapshot(self):
        state = ThreadSafeStateMap()
        state.set("a", 1)
        state.set("b", 2)
        for key, _ in state.items():
            state.delete(key)
        assert len(state) == 0

    def test_concurrent_writes(self):
        state = ThreadSafeStateMap()

        def writer(offset):
            for i in range(200):
                state.set(f"{offset}:{i}", i)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert state.size() == 1000
