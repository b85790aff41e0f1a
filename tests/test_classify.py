"""Tests for request screening and variant detection."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from activities import classify
from activities.classify import LLMClassifier, detect_variant, extract_idea, screen
from models.schemas import Variant


class TestDetectVariant:

    @pytest.mark.parametrize("text, expected", [
        ("a pomodoro timer with dark mode", Variant.STATIC),
        ("a 3D solar system explorer", Variant.STATIC_3D),
        ("a racing game", Variant.STATIC_3D),
        ("a todo list with login and a database", Variant.REALTIME_BACKEND),
        ("multiplayer chat where users sign in", Variant.REALTIME_BACKEND),
        ("a multiplayer 3d game", Variant.STATIC_3D),
        ("an author bio page", Variant.STATIC),
    ])
    def test_keywords(self, text, expected):
        assert detect_variant(text) is expected


class TestExtractIdea:

    def test_strips_mentions_and_trigger_verbs(self):
        assert extract_idea("@forgebot build me a weather app") == "me a weather app"

    def test_collapses_whitespace(self):
        assert extract_idea("  Make   a\n tip calculator ") == "a tip calculator"


def _api_error():
    return openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com"))


class TestLLMClassifier:

    async def test_answers(self):
        with patch.object(classify, "chat", return_value="YES"):
            assert await LLMClassifier().classify("build a timer")
        with patch.object(classify, "chat", return_value="UNSAFE"):
            assert not await LLMClassifier().moderate("build a phishing page")

    async def test_classify_fails_open(self):
        with patch.object(classify, "chat", side_effect=_api_error()):
            assert await LLMClassifier().classify("build a timer")

    async def test_moderate_fails_closed(self):
        with patch.object(classify, "chat", side_effect=_api_error()):
            assert not await LLMClassifier().moderate("build a timer")


class TestScreen:

    async def test_both_must_pass(self):
        classifier = AsyncMock()
        classifier.classify.return_value = True
        classifier.moderate.return_value = True
        assert await screen(classifier, "build a timer")

    async def test_not_a_request_skips_moderation(self):
        classifier = AsyncMock()
        classifier.classify.return_value = False
        assert not await screen(classifier, "you build cool stuff")
        classifier.moderate.assert_not_called()

    async def test_moderation_rejects(self):
        classifier = AsyncMock()
        classifier.classify.return_value = True
        classifier.moderate.return_value = False
        assert not await screen(classifier, "build something nasty")


class TestChatHelper:

    @staticmethod
    def _rate_limited(retry_after="0"):
        response = httpx.Response(429, headers={"retry-after": retry_after},
                                  request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
        return openai.RateLimitError("slow down", response=response, body=None)

    def test_rate_limit_is_retried(self):
        from utils import llm
        reply = MagicMock()
        reply.choices[0].message.content = "YES"
        client = MagicMock()
        client.chat.completions.create.side_effect = [self._rate_limited(), reply]
        with patch.object(llm, "get_client", return_value=client), patch.object(llm.time, "sleep") as sleep:
            assert llm.chat("sys", "build a timer") == "YES"
        sleep.assert_called_once_with(0.0)

    def test_rate_limit_gives_up(self):
        from utils import llm
        client = MagicMock()
        client.chat.completions.create.side_effect = self._rate_limited("abc")
        with patch.object(llm, "get_client", return_value=client), patch.object(llm.time, "sleep") as sleep:
            with pytest.raises(openai.RateLimitError):
                llm.chat("sys", "build a timer")
        assert client.chat.completions.create.call_count == llm.RATE_LIMIT_RETRIES + 1
        assert [c.args[0] for c in sleep.call_args_list] == [2.0, 4.0, 8.0]
