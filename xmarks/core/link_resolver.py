"""Follow short-link redirects (t.co and friends) to their destination."""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


async def resolve_url(client: httpx.AsyncClient, short_url: str) -> str:
    """Resolve short_url to the final URL after redirects.

    Tries a HEAD request first, then a streamed GET (body never read).
    One attempt each; when both fail the input is returned unchanged.
    """
    headers = {"User-Agent": BROWSER_USER_AGENT}

    try:
        response = await client.head(short_url, headers=headers, follow_redirects=True)
        if response.status_code < 400:
            return str(response.url)
        logger.debug(f"HEAD {short_url} returned {response.status_code}, retrying with GET")
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.debug(f"HEAD {short_url} failed ({type(e).__name__}), retrying with GET")

    try:
        async with client.stream("GET", short_url, headers=headers, follow_redirects=True) as response:
            return str(response.url)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.warning(f"Could not resolve {short_url}: {type(e).__name__}: {e}")
        return short_url
