"""Per-message flow: quota check, model call, history append, quota increment."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Sequence

from clawbot.llm import ContentFilteredError, LLMError, QuotaExceededError
from clawbot.memory.conversation_store import ChatId, ConversationEntry, ConversationStore, UserId
from clawbot.quota import QuotaStatus, QuotaTracker

logger = logging.getLogger(__name__)

MAX_TELEGRAM_MESSAGE_LEN = 4000
DEFAULT_CONTEXT_TURNS = 5
DEFAULT_LLM_TIMEOUT_SECONDS = 20

QUOTA_EXCEEDED_REPLY = "🔴 Daily AI limit reached. Please come back tomorrow."
CONTENT_FILTERED_REPLY = "⚠️ I can't respond to that. Please rephrase your message."
TRANSIENT_ERROR_REPLY = "Sorry, I had trouble thinking. Try again!"
TIMEOUT_REPLY = "The model took too long to answer. Try again in a moment."
CAPTION_FALLBACK = "Check this out! 🔥\n\n#viral #trending #fyp"

CAPTION_PROMPT = """Create a viral Instagram/TikTok caption for video: "{name}"

Requirements:
- Hook in first 3 words
- 2-3 sentences
- 8-12 hashtags
- 2-3 emojis
- Call to action

Format: [Hook] [Text] [CTA] [Hashtags]"""

Completer = Callable[[Sequence[ConversationEntry], str], str]


class ReplyOutcome(str, Enum):
    OK = "ok"
    QUOTA_EXCEEDED = "quota_exceeded"
    CONTENT_FILTERED = "content_filtered"
    ERROR = "error"


@dataclass(frozen=True)
class ChatReply:
    text: str
    outcome: ReplyOutcome

    @property
    def ok(self) -> bool:
        return self.outcome is ReplyOutcome.OK


def split_message(text: str, limit: int = MAX_TELEGRAM_MESSAGE_LEN) -> list[str]:
    """Cut text into consecutive chunks of at most `limit` characters."""
    if limit < 1:
        raise ValueError("limit must be positive")
    if not text:
        return [""]
    return [text[i : i + limit] for i in range(0, len(text), limit)]


class ChatService:
    def __init__(
        self,
        conversations: ConversationStore,
        quota: QuotaTracker,
        completer: Completer,
        *,
        context_turns: int = DEFAULT_CONTEXT_TURNS,
        timeout_seconds: float = DEFAULT_LLM_TIMEOUT_SECONDS,
    ) -> None:
        self._conversations = conversations
        self._quota = quota
        self._completer = completer
        self._context_turns = context_turns
        self._timeout_seconds = timeout_seconds
        self._chat_locks: dict[ChatId, asyncio.Lock] = {}

    def _chat_lock(self, chat_id: ChatId) -> asyncio.Lock:
        # Handlers run on one event loop, so the dict itself needs no lock.
        lock = self._chat_locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._chat_locks[chat_id] = lock
        return lock

    async def _call_model(self, history: Sequence[ConversationEntry], message: str) -> str:
        return await asyncio.wait_for(
            asyncio.to_thread(self._completer, history, message),
            timeout=self._timeout_seconds,
        )

    def _failure_reply(self, exc: BaseException, *, chat_id: ChatId) -> ChatReply:
        if isinstance(exc, QuotaExceededError):
            logger.warning("Model quota exceeded for chat %s: %s", chat_id, exc)
            return ChatReply(QUOTA_EXCEEDED_REPLY, ReplyOutcome.QUOTA_EXCEEDED)
        if isinstance(exc, ContentFilteredError):
            logger.info("Model filtered content for chat %s: %s", chat_id, exc)
            return ChatReply(CONTENT_FILTERED_REPLY, ReplyOutcome.CONTENT_FILTERED)
        if isinstance(exc, asyncio.TimeoutError):
            logger.warning("Model call timed out for chat %s after %ss", chat_id, self._timeout_seconds)
            return ChatReply(TIMEOUT_REPLY, ReplyOutcome.ERROR)
        if isinstance(exc, LLMError):
            logger.error("Model call failed for chat %s: %s", chat_id, exc)
        else:
            logger.error("Unexpected model failure for chat %s", chat_id, exc_info=exc)
        return ChatReply(TRANSIENT_ERROR_REPLY, ReplyOutcome.ERROR)

    async def reply(self, chat_id: ChatId, user_id: UserId, text: str) -> ChatReply:
        """Answer one user message. Always returns exactly one reply, never raises for model errors."""
        async with self._chat_lock(chat_id):
            if self._quota.status().remaining <= 0:
                return ChatReply(QUOTA_EXCEEDED_REPLY, ReplyOutcome.QUOTA_EXCEEDED)

            history = self._conversations.recent(chat_id, self._context_turns)
            try:
                answer = await self._call_model(history, text)
            except Exception as exc:  # noqa: BLE001
                return self._failure_reply(exc, chat_id=chat_id)

            self._conversations.append_exchange(
                chat_id, text, answer, on_commit=lambda: self._quota.increment(user_id)
            )
            return ChatReply(answer, ReplyOutcome.OK)

    async def caption(self, user_id: UserId, video_name: str) -> ChatReply:
        """One-shot caption; not recorded in any history. Falls back to a stock caption on model errors."""
        if self._quota.status().remaining <= 0:
            return ChatReply(QUOTA_EXCEEDED_REPLY, ReplyOutcome.QUOTA_EXCEEDED)
        try:
            answer = await self._call_model([], CAPTION_PROMPT.format(name=video_name))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Caption generation failed: %s", exc)
            return ChatReply(CAPTION_FALLBACK, ReplyOutcome.ERROR)
        self._quota.increment(user_id)
        return ChatReply(answer, ReplyOutcome.OK)

    def start_chat(self, chat_id: ChatId, user_id: UserId) -> bool:
        """Register a first contact. Returns True when the chat had not been seen before."""
        if self._conversations.ensure_preferences(user_id):
            self._conversations.set_preference(
                user_id, "joined", datetime.now(timezone.utc).isoformat()
            )
        if self._conversations.has_history(chat_id):
            return False
        self._conversations.clear(chat_id)
        return True

    def quota_status(self) -> QuotaStatus:
        return self._quota.status()

    def reset(self, chat_id: ChatId) -> None:
        self._conversations.clear(chat_id)

    def user_stats(self, chat_id: ChatId, user_id: UserId) -> dict[str, Any]:
        joined = self._conversations.get_preference(user_id, "joined")
        messages = 0
        if self._conversations.has_history(chat_id):
            messages = len(self._conversations.get_history(chat_id))
        return {
            "messages": messages,
            "joined": joined,
            "quota": self._quota.status(),
        }
