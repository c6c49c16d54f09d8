"""JSON snapshot persistence for conversation and quota state."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from clawbot.memory.conversation_store import (
    ChatId,
    ConversationEntry,
    ConversationStore,
    UserId,
    is_state_key,
)
from clawbot.quota import DailyQuota, QuotaTracker

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL_SECONDS = 30


@dataclass(frozen=True)
class PersistedSnapshot:
    conversations: list[tuple[ChatId, list[ConversationEntry]]] = field(default_factory=list)
    user_preferences: list[tuple[UserId, dict[str, Any]]] = field(default_factory=list)
    daily_stats: DailyQuota | None = None

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "conversations": [
                [chat_id, [entry.to_dict() for entry in entries]]
                for chat_id, entries in self.conversations
            ],
            "userPreferences": [[user_id, dict(prefs)] for user_id, prefs in self.user_preferences],
            "dailyStats": self.daily_stats.to_dict() if self.daily_stats is not None else None,
        }

    @classmethod
    def from_json_dict(cls, raw: Any) -> "PersistedSnapshot":
        """Validate and decode a stored document; raise ValueError on any shape problem."""
        if not isinstance(raw, dict):
            raise ValueError("State document must be a JSON object")

        conversations: list[tuple[ChatId, list[ConversationEntry]]] = []
        for pair in raw.get("conversations") or []:
            if not isinstance(pair, list) or len(pair) != 2 or not is_state_key(pair[0]):
                raise ValueError("conversations must be [chatId, history] pairs")
            if not isinstance(pair[1], list):
                raise ValueError(f"History for chat {pair[0]!r} must be a list")
            conversations.append((pair[0], [ConversationEntry.from_dict(item) for item in pair[1]]))

        preferences: list[tuple[UserId, dict[str, Any]]] = []
        for pair in raw.get("userPreferences") or []:
            if not isinstance(pair, list) or len(pair) != 2 or not is_state_key(pair[0]):
                raise ValueError("userPreferences must be [userId, preferences] pairs")
            if not isinstance(pair[1], dict):
                raise ValueError(f"Preferences for user {pair[0]!r} must be an object")
            preferences.append((pair[0], dict(pair[1])))

        stats_raw = raw.get("dailyStats")
        daily_stats = DailyQuota.from_dict(stats_raw) if stats_raw is not None else None
        return cls(conversations=conversations, user_preferences=preferences, daily_stats=daily_stats)


class PersistenceGateway:
    """Snapshots the conversation store and quota tracker to one JSON file.

    Writes go to a temp file in the same directory followed by os.replace,
    so readers only ever see the previous or the new complete document.
    """

    def __init__(self, state_path: Path, conversations: ConversationStore, quota: QuotaTracker) -> None:
        self._state_path = Path(state_path)
        self._conversations = conversations
        self._quota = quota
        self._write_lock = threading.Lock()

    @property
    def state_path(self) -> Path:
        return self._state_path

    def snapshot(self) -> PersistedSnapshot:
        # Both owners stay frozen together so the snapshot is one point in time.
        with self._conversations.frozen(), self._quota.frozen():
            conversations, preferences = self._conversations.export_state()
            stats = self._quota.export_state()
        return PersistedSnapshot(
            conversations=[
                (chat_id, [ConversationEntry.from_dict(item) for item in entries])
                for chat_id, entries in conversations
            ],
            user_preferences=[(user_id, prefs) for user_id, prefs in preferences],
            daily_stats=DailyQuota.from_dict(stats),
        )

    def flush(self, snapshot: PersistedSnapshot | None = None) -> bool:
        """Write the snapshot (or a fresh one). Failures are logged, never raised."""
        tmp_path: str | None = None
        with self._write_lock:
            # Snapshot under the write lock so files land in snapshot order.
            if snapshot is None:
                snapshot = self.snapshot()
            try:
                encoded = json.dumps(snapshot.to_json_dict(), ensure_ascii=False)
                self._state_path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(
                    prefix=f".{self._state_path.name}.",
                    suffix=".tmp",
                    dir=str(self._state_path.parent),
                )
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(encoded)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_path, self._state_path)
                tmp_path = None
            except (OSError, TypeError, ValueError) as exc:
                logger.warning("State flush to %s failed: %s", self._state_path, exc)
                return False
            finally:
                if tmp_path is not None:
                    try:
                        os.unlink(tmp_path)
                    except OSError:
                        pass
        logger.debug(
            "Flushed %d conversations to %s",
            len(snapshot.conversations),
            self._state_path,
        )
        return True

    def restore(self) -> PersistedSnapshot | None:
        """Read the stored snapshot; None means no usable prior state."""
        if not self._state_path.exists():
            logger.info("No saved state at %s; starting fresh", self._state_path)
            return None
        try:
            raw = json.loads(self._state_path.read_text(encoding="utf-8"))
            return PersistedSnapshot.from_json_dict(raw)
        except OSError as exc:
            logger.warning("Could not read saved state %s: %s; starting fresh", self._state_path, exc)
        except (ValueError, TypeError, RecursionError) as exc:
            # json.JSONDecodeError is a ValueError; deeply nested arrays raise RecursionError.
            logger.warning("Saved state %s is malformed: %s; starting fresh", self._state_path, exc)
        return None

    def apply(self, snapshot: PersistedSnapshot) -> None:
        self._conversations.load_state(snapshot.conversations, snapshot.user_preferences)
        if snapshot.daily_stats is not None:
            self._quota.load_state(snapshot.daily_stats)

    def restore_into_owners(self) -> bool:
        snapshot = self.restore()
        if snapshot is None:
            return False
        self.apply(snapshot)
        logger.info(
            "Restored %d conversations and %d user records from %s",
            len(snapshot.conversations),
            len(snapshot.user_preferences),
            self._state_path,
        )
        return True


class FlushScheduler:
    """Background thread that flushes the gateway every `interval_seconds`."""

    def __init__(self, gateway: PersistenceGateway, interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._gateway = gateway
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="state-flush", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            self._gateway.flush()

    def flush_now(self) -> bool:
        return self._gateway.flush()

    def stop(self, *, flush: bool = True) -> None:
        """Cancel the timer and, by default, write one last snapshot."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._thread = None
        if flush:
            self._gateway.flush()
