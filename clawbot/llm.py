"""Minimal Gemini generateContent client and its failure taxonomy."""

from __future__ import annotations

import json
import socket
from pathlib import Path
from typing import Any, Sequence
from urllib import error, parse, request

from clawbot.memory.conversation_store import ConversationEntry, Role

DEFAULT_MODEL = "gemini-2.0-flash-lite"
GEMINI_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TEMPERATURE = 0.9
DEFAULT_MAX_OUTPUT_TOKENS = 2048
BLOCKING_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION"}


class LLMError(RuntimeError):
    """Base class for model call failures."""


class QuotaExceededError(LLMError):
    """The model provider refused the call for rate or quota reasons."""


class ContentFilteredError(LLMError):
    """The prompt or the generated answer was blocked by safety filters."""


class TransientLLMError(LLMError):
    """Network, timeout, server or response-shape failure; the user may retry."""


def read_secret(secrets_dir: Path, filename: str) -> str | None:
    """Read first line of a secret file; return None if missing or empty."""
    path = secrets_dir / filename
    if not path.exists():
        return None
    raw = path.read_text(encoding="utf-8").strip()
    return raw if raw else None


def build_contents(history: Sequence[ConversationEntry], message: str) -> list[dict[str, Any]]:
    """Turn prior turns plus the new message into Gemini `contents`.

    The API expects the first turn to come from the user, so leading model
    turns (left over after history trimming) are dropped.
    """
    turns = list(history)
    while turns and turns[0].role is not Role.USER:
        turns.pop(0)
    contents = [{"role": entry.role.value, "parts": [{"text": entry.text}]} for entry in turns]
    contents.append({"role": Role.USER.value, "parts": [{"text": message}]})
    return contents


def _error_status(body: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return ""
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        return str(err.get("status") or "")
    return ""


def _extract_text(data: dict[str, Any]) -> str:
    feedback = data.get("promptFeedback") or {}
    block_reason = feedback.get("blockReason")
    if block_reason:
        raise ContentFilteredError(f"Prompt blocked: {block_reason}")

    candidates = data.get("candidates") or []
    if not candidates:
        raise TransientLLMError(f"Gemini returned no candidates: {data}")
    candidate = candidates[0] or {}
    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))
    finish_reason = str(candidate.get("finishReason") or "")
    if not text.strip():
        if finish_reason in BLOCKING_FINISH_REASONS:
            raise ContentFilteredError(f"Response blocked: {finish_reason}")
        raise TransientLLMError(f"Gemini returned an empty answer (finishReason={finish_reason or 'none'})")
    return text.strip()


def generate(
    contents: list[dict[str, Any]],
    api_key: str,
    *,
    base_url: str | None = None,
    model: str = DEFAULT_MODEL,
    temperature: float = DEFAULT_TEMPERATURE,
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    timeout: float = 60,
) -> str:
    """
    Call the Gemini generateContent REST endpoint and return the answer text.
    Raises QuotaExceededError, ContentFilteredError or TransientLLMError.
    """
    url = (
        (base_url or GEMINI_BASE).rstrip("/")
        + f"/models/{parse.quote(model, safe='')}:generateContent"
    )
    body = {
        "contents": contents,
        "generationConfig": {
            "temperature": temperature,
            "maxOutputTokens": max_output_tokens,
        },
    }
    encoded = json.dumps(body).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "x-goog-api-key": api_key,
    }
    req = request.Request(url, data=encoded, headers=headers, method="POST")
    try:
        with request.urlopen(req, timeout=timeout) as response:  # noqa: S310
            data = json.loads(response.read().decode("utf-8"))
    except error.HTTPError as exc:
        body_read = exc.read().decode("utf-8", errors="replace")
        if exc.code == 429 or _error_status(body_read) == "RESOURCE_EXHAUSTED":
            raise QuotaExceededError(f"Gemini API HTTP {exc.code}: {body_read[:300]}") from exc
        raise TransientLLMError(f"Gemini API HTTP {exc.code}: {body_read[:300]}") from exc
    except (error.URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
        raise TransientLLMError(f"Gemini API unreachable: {exc}") from exc
    except ValueError as exc:
        raise TransientLLMError(f"Gemini API returned invalid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise TransientLLMError(f"Gemini API unexpected response: {data!r}")
    return _extract_text(data)


class GeminiClient:
    """Holds model settings so callers only pass history and the new message."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        base_url: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        timeout: float = 60,
    ) -> None:
        self._api_key = api_key
        self.model = model
        self._base_url = base_url
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._timeout = timeout

    def complete(self, history: Sequence[ConversationEntry], message: str) -> str:
        return generate(
            build_contents(history, message),
            self._api_key,
            base_url=self._base_url,
            model=self.model,
            temperature=self._temperature,
            max_output_tokens=self._max_output_tokens,
            timeout=self._timeout,
        )
