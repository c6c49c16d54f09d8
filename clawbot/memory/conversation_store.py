"""In-process conversation history and user preference store."""

from __future__ import annotations

import threading
import time
from collections import deque
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator

DEFAULT_MAX_HISTORY = 40

ChatId = int | str
UserId = int | str
PreferenceValue = str | float


def is_state_key(value: Any) -> bool:
    """Chat and user IDs must survive a JSON round trip unchanged."""
    return isinstance(value, (int, str)) and not isinstance(value, bool)


def check_state_key(value: Any, kind: str = "chat") -> None:
    if not is_state_key(value):
        raise TypeError(f"{kind} id must be int or str, got {type(value).__name__}")


class Role(str, Enum):
    USER = "user"
    MODEL = "model"

    @classmethod
    def parse(cls, raw: str) -> "Role":
        value = str(raw).strip().lower()
        # Older state files used the chat-completions name for model turns.
        if value == "assistant":
            return cls.MODEL
        return cls(value)


@dataclass(frozen=True)
class ConversationEntry:
    role: Role
    text: str
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role.value, "text": self.text, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ConversationEntry":
        if not isinstance(raw, dict):
            raise ValueError(f"Conversation entry must be a mapping, got {type(raw).__name__}")
        text = raw.get("text")
        if not isinstance(text, str):
            raise ValueError("Conversation entry is missing text")
        timestamp = raw.get("timestamp", raw.get("time", 0.0))
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValueError("Conversation entry timestamp must be numeric")
        return cls(role=Role.parse(raw.get("role", "")), text=text, timestamp=float(timestamp))


class ConversationStore:
    """Owns per-chat histories (bounded, FIFO eviction) and per-user preferences.

    Each chat has its own lock, so appends to one chat never wait on another.
    `frozen()` holds every lock at once for point-in-time snapshots.
    """

    def __init__(
        self,
        max_history: int = DEFAULT_MAX_HISTORY,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self._max_history = max_history
        self._clock = clock
        self._registry_lock = threading.RLock()
        self._prefs_lock = threading.RLock()
        self._histories: dict[ChatId, deque[ConversationEntry]] = {}
        self._chat_locks: dict[ChatId, threading.RLock] = {}
        self._preferences: dict[UserId, dict[str, PreferenceValue]] = {}

    @property
    def max_history(self) -> int:
        return self._max_history

    def _slot(self, chat_id: ChatId) -> tuple[threading.RLock, deque[ConversationEntry], bool]:
        check_state_key(chat_id)
        with self._registry_lock:
            history = self._histories.get(chat_id)
            created = history is None
            if history is None:
                history = deque(maxlen=self._max_history)
                self._histories[chat_id] = history
                self._chat_locks[chat_id] = threading.RLock()
            return self._chat_locks[chat_id], history, created

    def ensure_history(self, chat_id: ChatId) -> bool:
        """Get-or-create the chat's history; return True only when it was created."""
        _, _, created = self._slot(chat_id)
        return created

    def has_history(self, chat_id: ChatId) -> bool:
        with self._registry_lock:
            return chat_id in self._histories

    def get_history(self, chat_id: ChatId) -> list[ConversationEntry]:
        """Return a copy of the chat's turns, oldest first. Creates an empty history on first access."""
        lock, history, _ = self._slot(chat_id)
        with lock:
            return list(history)

    def recent(self, chat_id: ChatId, limit: int) -> list[ConversationEntry]:
        if limit <= 0:
            return []
        history = self.get_history(chat_id)
        return history[-limit:]

    def append(self, chat_id: ChatId, role: Role, text: str) -> ConversationEntry:
        entry = ConversationEntry(role=Role(role), text=text, timestamp=self._clock())
        lock, history, _ = self._slot(chat_id)
        with lock:
            history.append(entry)
        return entry

    def append_exchange(
        self,
        chat_id: ChatId,
        user_text: str,
        model_text: str,
        *,
        on_commit: Callable[[], Any] | None = None,
    ) -> None:
        """Append a user turn and its model reply as one unit.

        `on_commit` runs while the chat lock is still held, so a snapshot
        sees the exchange and whatever the callback records together.
        """
        now = self._clock()
        lock, history, _ = self._slot(chat_id)
        with lock:
            history.append(ConversationEntry(role=Role.USER, text=user_text, timestamp=now))
            history.append(ConversationEntry(role=Role.MODEL, text=model_text, timestamp=now))
            if on_commit is not None:
                on_commit()

    def clear(self, chat_id: ChatId) -> None:
        lock, history, _ = self._slot(chat_id)
        with lock:
            history.clear()

    def conversation_count(self) -> int:
        with self._registry_lock:
            return len(self._histories)

    def ensure_preferences(self, user_id: UserId) -> bool:
        """Get-or-create the user's preference record; return True only when it was created."""
        check_state_key(user_id, "user")
        with self._prefs_lock:
            if user_id in self._preferences:
                return False
            self._preferences[user_id] = {}
            return True

    def get_preference(
        self,
        user_id: UserId,
        key: str,
        default: PreferenceValue | None = None,
    ) -> PreferenceValue | None:
        with self._prefs_lock:
            prefs = self._preferences.get(user_id)
            if prefs is None:
                return default
            return prefs.get(key, default)

    def set_preference(self, user_id: UserId, key: str, value: PreferenceValue) -> None:
        check_state_key(user_id, "user")
        with self._prefs_lock:
            self._preferences.setdefault(user_id, {})[key] = value

    def preferences(self, user_id: UserId) -> dict[str, PreferenceValue]:
        with self._prefs_lock:
            return dict(self._preferences.get(user_id, {}))

    def user_count(self) -> int:
        with self._prefs_lock:
            return len(self._preferences)

    @contextmanager
    def frozen(self) -> Iterator[None]:
        """Hold every lock so no history or preference changes until exit."""
        with ExitStack() as stack:
            stack.enter_context(self._registry_lock)
            stack.enter_context(self._prefs_lock)
            for lock in list(self._chat_locks.values()):
                stack.enter_context(lock)
            yield

    def export_state(self) -> tuple[list[list[Any]], list[list[Any]]]:
        """Return ([chat_id, [entry, ...]] pairs, [user_id, prefs] pairs) as JSON-ready lists."""
        with self.frozen():
            conversations = [
                [chat_id, [entry.to_dict() for entry in history]]
                for chat_id, history in self._histories.items()
            ]
            preferences = [[user_id, dict(prefs)] for user_id, prefs in self._preferences.items()]
        return conversations, preferences

    def load_state(
        self,
        conversations: list[tuple[ChatId, list[ConversationEntry]]],
        preferences: list[tuple[UserId, dict[str, PreferenceValue]]],
    ) -> None:
        """Replace all histories and preferences with the given state."""
        with self.frozen():
            loaded_ids = set()
            for chat_id, entries in conversations:
                loaded_ids.add(chat_id)
                _, history, _ = self._slot(chat_id)
                history.clear()
                # deque(maxlen) keeps only the newest entries if the file exceeds the cap.
                history.extend(entries)
            for chat_id, history in self._histories.items():
                if chat_id not in loaded_ids:
                    history.clear()
            self._preferences = {user_id: dict(prefs) for user_id, prefs in preferences}
