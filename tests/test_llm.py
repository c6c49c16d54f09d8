from __future__ import annotations

import io
import json
import unittest
from unittest.mock import MagicMock, patch
from urllib import error

from clawbot.llm import (
    ContentFilteredError,
    GeminiClient,
    QuotaExceededError,
    TransientLLMError,
    build_contents,
    generate,
)
from clawbot.memory.conversation_store import ConversationEntry, Role


def _response(payload: object) -> MagicMock:
    response = MagicMock()
    response.read.return_value = json.dumps(payload).encode("utf-8")
    response.__enter__.return_value = response
    return response


def _http_error(code: int, body: object) -> error.HTTPError:
    return error.HTTPError(
        "https://example.invalid",
        code,
        "error",
        hdrs=None,
        fp=io.BytesIO(json.dumps(body).encode("utf-8")),
    )


def _answer(text: str, finish_reason: str = "STOP") -> dict[str, object]:
    return {"candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": finish_reason}]}


class BuildContentsTests(unittest.TestCase):
    def test_leading_model_turns_are_dropped(self) -> None:
        history = [
            ConversationEntry(Role.MODEL, "orphan answer", 1.0),
            ConversationEntry(Role.USER, "q1", 2.0),
            ConversationEntry(Role.MODEL, "a1", 3.0),
        ]
        contents = build_contents(history, "q2")
        self.assertEqual([c["role"] for c in contents], ["user", "model", "user"])
        self.assertEqual(contents[-1]["parts"], [{"text": "q2"}])


class GenerateTests(unittest.TestCase):
    def test_returns_joined_candidate_text(self) -> None:
        payload = {"candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "there "}]}}]}
        with patch("clawbot.llm.request.urlopen", return_value=_response(payload)) as urlopen:
            text = generate([{"role": "user", "parts": [{"text": "hi"}]}], "key", model="gemini-test")
        self.assertEqual(text, "Hello there")
        req = urlopen.call_args.args[0]
        self.assertTrue(req.full_url.endswith("/models/gemini-test:generateContent"))
        self.assertEqual(req.get_header("X-goog-api-key"), "key")
        body = json.loads(req.data.decode("utf-8"))
        self.assertEqual(body["generationConfig"]["maxOutputTokens"], 2048)

    def test_http_429_is_quota_exceeded(self) -> None:
        exc = _http_error(429, {"error": {"status": "RESOURCE_EXHAUSTED"}})
        with patch("clawbot.llm.request.urlopen", side_effect=exc):
            with self.assertRaises(QuotaExceededError):
                generate([], "key")

    def test_resource_exhausted_status_is_quota_exceeded(self) -> None:
        exc = _http_error(403, {"error": {"status": "RESOURCE_EXHAUSTED"}})
        with patch("clawbot.llm.request.urlopen", side_effect=exc):
            with self.assertRaises(QuotaExceededError):
                generate([], "key")

    def test_server_error_is_transient(self) -> None:
        exc = _http_error(503, {"error": {"status": "UNAVAILABLE"}})
        with patch("clawbot.llm.request.urlopen", side_effect=exc):
            with self.assertRaises(TransientLLMError):
                generate([], "key")

    def test_network_error_is_transient(self) -> None:
        with patch("clawbot.llm.request.urlopen", side_effect=error.URLError("no route")):
            with self.assertRaises(TransientLLMError):
                generate([], "key")

    def test_blocked_prompt_is_content_filtered(self) -> None:
        payload = {"promptFeedback": {"blockReason": "SAFETY"}}
        with patch("clawbot.llm.request.urlopen", return_value=_response(payload)):
            with self.assertRaises(ContentFilteredError):
                generate([], "key")

    def test_safety_finish_without_text_is_content_filtered(self) -> None:
        with patch("clawbot.llm.request.urlopen", return_value=_response(_answer("", "SAFETY"))):
            with self.assertRaises(ContentFilteredError):
                generate([], "key")

    def test_empty_candidates_is_transient(self) -> None:
        with patch("clawbot.llm.request.urlopen", return_value=_response({"candidates": []})):
            with self.assertRaises(TransientLLMError):
                generate([], "key")


class GeminiClientTests(unittest.TestCase):
    def test_complete_sends_history_and_message(self) -> None:
        client = GeminiClient("key", model="m", temperature=0.1, max_output_tokens=10)
        history = [ConversationEntry(Role.USER, "q1", 1.0), ConversationEntry(Role.MODEL, "a1", 2.0)]
        with patch("clawbot.llm.request.urlopen", return_value=_response(_answer("a2"))) as urlopen:
            self.assertEqual(client.complete(history, "q2"), "a2")
        body = json.loads(urlopen.call_args.args[0].data.decode("utf-8"))
        self.assertEqual([c["parts"][0]["text"] for c in body["contents"]], ["q1", "a1", "q2"])
        self.assertEqual(body["generationConfig"], {"temperature": 0.1, "maxOutputTokens": 10})


if __name__ == "__main__":
    unittest.main()
