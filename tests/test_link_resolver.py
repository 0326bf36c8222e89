"""Tests for link_resolver.py"""

import httpx
import pytest

from xmarks.core.link_resolver import resolve_url


def redirecting_handler(seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url)))
        if request.url.host == "t.co":
            return httpx.Response(301, headers={"Location": "https://example.com/real-article"})
        return httpx.Response(200, text="ok")

    return handler


@pytest.mark.asyncio
async def test_follows_redirects_with_head():
    seen = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(redirecting_handler(seen))) as client:
        final = await resolve_url(client, "https://t.co/abc")

    assert final == "https://example.com/real-article"
    assert all(method == "HEAD" for method, _ in seen)


@pytest.mark.asyncio
async def test_falls_back_to_get_when_head_rejected():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.method)
        if request.method == "HEAD":
            return httpx.Response(405)
        if request.url.host == "t.co":
            return httpx.Response(302, headers={"Location": "https://example.com/final"})
        return httpx.Response(200, text="body")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        final = await resolve_url(client, "https://t.co/xyz")

    assert final == "https://example.com/final"
    assert seen[0] == "HEAD"
    assert "GET" in seen


@pytest.mark.asyncio
async def test_returns_input_when_both_fail():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        final = await resolve_url(client, "https://t.co/dead")

    assert final == "https://t.co/dead"


@pytest.mark.asyncio
async def test_head_network_error_then_get_succeeds():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, text="ok")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        final = await resolve_url(client, "https://example.com/page")

    assert final == "https://example.com/page"
