"""Tests for article_cleaner.py"""

import json

import httpx
import pytest

from xmarks.core.article_cleaner import CLEANER_MODEL, ArticleCleaner

LONG_TEXT = "Subscribe now! " + "The actual article paragraph with real content. " * 5


def cleaner_with(handler, api_key="sk-test") -> ArticleCleaner:
    return ArticleCleaner(api_key=api_key, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def chat_response(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


@pytest.mark.asyncio
class TestArticleCleaner:
    async def test_returns_cleaned_text(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return chat_response("  The actual article paragraph.  ")

        result = await cleaner_with(handler).clean(LONG_TEXT)

        assert result == "The actual article paragraph."
        assert seen["body"]["model"] == CLEANER_MODEL
        assert seen["body"]["temperature"] == 0.1
        assert seen["body"]["messages"][1]["content"] == LONG_TEXT

    async def test_short_text_untouched(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert await cleaner_with(handler).clean("too short") == "too short"

    async def test_missing_key_returns_input(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert await cleaner_with(handler, api_key="").clean(LONG_TEXT) == LONG_TEXT

    async def test_api_error_returns_input(self):
        assert await cleaner_with(lambda r: httpx.Response(500, text="oops")).clean(LONG_TEXT) == LONG_TEXT

    async def test_network_error_returns_input(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        assert await cleaner_with(handler).clean(LONG_TEXT) == LONG_TEXT

    async def test_empty_answer_returns_input(self):
        assert await cleaner_with(lambda r: chat_response("   ")).clean(LONG_TEXT) == LONG_TEXT

    async def test_malformed_answer_returns_input(self):
        assert await cleaner_with(lambda r: httpx.Response(200, json={"choices": []})).clean(LONG_TEXT) == LONG_TEXT
