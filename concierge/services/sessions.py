"""Per-conversation history storage.

Histories are keyed by ``(tenant_id, session_id, client_id)`` so that two
tenants, or two widgets embedded by the same visitor, never see each
other's turns.  The store is injected into the app (see ``server.py``) and
everything else talks to the :class:`HistoryStore` interface, so a shared
cache can replace the in-memory implementation for multi-process
deployments.

Two concurrent requests on the *same* key (duplicate browser tabs) may
interleave their appends.  That race is accepted: the lock only protects
the dict itself, it does not serialise whole chat turns.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

from concierge.config import MAX_HISTORY_TURNS
from concierge.models import ChatMessage, SessionKey

logger = logging.getLogger(__name__)


class HistoryStore(ABC):
    """Keyed conversation memory."""

    @abstractmethod
    def get(self, key: SessionKey) -> list[ChatMessage]:
        """Return the history for *key*, creating an empty one if absent."""

    @abstractmethod
    def append(self, key: SessionKey, user_turn: ChatMessage, assistant_turn: ChatMessage) -> None:
        """Append one user/assistant pair."""

    @abstractmethod
    def trim(self, key: SessionKey, max_turns: int = MAX_HISTORY_TURNS) -> int:
        """Drop the oldest messages beyond ``2 * max_turns``.  Returns count dropped."""

    @abstractmethod
    def reset(self, key: SessionKey) -> None:
        """Clear the history for *key*."""


class InMemoryHistoryStore(HistoryStore):
    """Process-local store.  Lost on restart."""

    def __init__(self) -> None:
        self._histories: dict[SessionKey, list[ChatMessage]] = {}
        self._lock = threading.Lock()

    def get(self, key: SessionKey) -> list[ChatMessage]:
        with self._lock:
            history = self._histories.setdefault(key, [])
            # Callers get a snapshot; only append/trim/reset mutate the store.
            return list(history)

    def append(self, key: SessionKey, user_turn: ChatMessage, assistant_turn: ChatMessage) -> None:
        with self._lock:
            history = self._histories.setdefault(key, [])
            history.append(user_turn)
            history.append(assistant_turn)

    def trim(self, key: SessionKey, max_turns: int = MAX_HISTORY_TURNS) -> int:
        max_messages = max_turns * 2
        with self._lock:
            history = self._histories.get(key)
            if not history or len(history) <= max_messages:
                return 0
            excess = len(history) - max_messages
            del history[:excess]
        logger.debug("History %s trimmed by %d message(s)", key, excess)
        return excess

    def reset(self, key: SessionKey) -> None:
        with self._lock:
            self._histories[key] = []
        logger.info("History reset for %s", key)

    def __len__(self) -> int:
        return len(self._histories)
