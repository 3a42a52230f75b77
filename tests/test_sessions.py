"""Tests for the in-memory history store."""

from __future__ import annotations

from concierge.models import ChatMessage, SessionKey
from concierge.services.sessions import InMemoryHistoryStore

KEY = SessionKey("acme", "session-1", "widget-1")


def _turn(i: int) -> tuple[ChatMessage, ChatMessage]:
    return (
        ChatMessage(role="user", content=f"question {i}"),
        ChatMessage(role="assistant", content=f"answer {i}"),
    )


class TestInMemoryHistoryStore:
    def test_get_creates_empty_history(self):
        store = InMemoryHistoryStore()
        assert store.get(KEY) == []
        assert len(store) == 1

    def test_append_keeps_order(self):
        store = InMemoryHistoryStore()
        store.append(KEY, *_turn(1))
        store.append(KEY, *_turn(2))
        assert [m.content for m in store.get(KEY)] == [
            "question 1", "answer 1", "question 2", "answer 2",
        ]

    def test_get_returns_a_copy(self):
        store = InMemoryHistoryStore()
        store.append(KEY, *_turn(1))
        snapshot = store.get(KEY)
        snapshot.clear()
        assert len(store.get(KEY)) == 2

    def test_trim_keeps_newest_turns(self):
        store = InMemoryHistoryStore()
        for i in range(5):
            store.append(KEY, *_turn(i))

        dropped = store.trim(KEY, max_turns=2)

        assert dropped == 6
        assert [m.content for m in store.get(KEY)] == [
            "question 3", "answer 3", "question 4", "answer 4",
        ]

    def test_trim_below_limit_is_a_no_op(self):
        store = InMemoryHistoryStore()
        store.append(KEY, *_turn(1))
        assert store.trim(KEY, max_turns=2) == 0
        assert store.trim(SessionKey("acme", "unknown", "widget-1")) == 0

    def test_reset_clears_history(self):
        store = InMemoryHistoryStore()
        store.append(KEY, *_turn(1))
        store.reset(KEY)
        assert store.get(KEY) == []

    def test_keys_are_isolated(self):
        store = InMemoryHistoryStore()
        other_client = SessionKey("acme", "session-1", "widget-2")
        other_tenant = SessionKey("globex", "session-1", "widget-1")
        store.append(KEY, *_turn(1))

        assert store.get(other_client) == []
        assert store.get(other_tenant) == []
        store.reset(other_client)
        assert len(store.get(KEY)) == 2
