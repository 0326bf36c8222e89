"""Article extraction for links found in bookmarks.

Uses readability-lxml for main-content detection, trafilatura for
page metadata (byline, site name, description) and markdownify to
turn the content fragment into Markdown.
"""

from __future__ import annotations

import asyncio
import html
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import httpx
import trafilatura
from markdownify import ATX, markdownify
from readability import Document

from xmarks.core.article_classifier import is_likely_article
from xmarks.core.link_resolver import BROWSER_USER_AGENT, resolve_url

logger = logging.getLogger(__name__)

# Content fragments shorter than this are login walls, paywall stubs etc.
MIN_CONTENT_LENGTH = 100

FETCH_TIMEOUT = 15.0

EXCERPT_LENGTH = 200

BROWSER_HEADERS = {
    "User-Agent": BROWSER_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

# readability-lxml's placeholder when a page has no <title>
_NO_TITLE = "[no-title]"


@dataclass
class ExtractedArticle:
    """An article ready to be stored for a bookmark."""

    url: str
    title: str
    content: str  # HTML
    content_md: str
    author: str | None = None
    excerpt: str | None = None
    site_name: str | None = None
    pdf_path: str | None = None


@dataclass
class CandidateLink:
    """A link found in a bookmark and what became of it."""

    original_url: str
    resolved_url: str
    is_article: bool = False


@dataclass
class LinkBatchResult:
    links: list[CandidateLink] = field(default_factory=list)
    articles: list[ExtractedArticle] = field(default_factory=list)


def html_to_markdown(content_html: str) -> str:
    """Convert an HTML fragment to Markdown (ATX headings, fenced code, "-" bullets)."""
    markdown = markdownify(content_html, heading_style=ATX, bullets="-", code_language="")
    return re.sub(r"\n{3,}", "\n\n", markdown).strip()


def text_to_html(text: str) -> str:
    """Minimal HTML rendering of plain text: one <p> per blank-line separated block."""
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text or "") if p.strip()]
    rendered = []
    for p in paragraphs:
        escaped = html.escape(p).replace("\n", "<br>")
        rendered.append(f"<p>{escaped}</p>")
    return "\n".join(rendered)


def make_excerpt(markdown: str, limit: int = EXCERPT_LENGTH) -> str | None:
    """First prose line of the Markdown, cut to limit characters."""
    for line in markdown.splitlines():
        line = line.strip()
        if not line or line.startswith(("#", "```", "![", "|")):
            continue
        line = line.lstrip("-*> ").strip()
        if line:
            return line if len(line) <= limit else line[: limit - 1].rstrip() + "…"
    return None


def _read_metadata(page_html: str, url: str) -> dict[str, Any]:
    """Title, byline, site name and description as trafilatura sees them."""
    try:
        meta = trafilatura.extract_metadata(page_html, default_url=url)
    except Exception as e:
        logger.warning(f"Metadata extraction failed for {url}: {type(e).__name__}: {e}")
        return {}
    if meta is None:
        return {}
    return {
        "title": getattr(meta, "title", None),
        "author": getattr(meta, "author", None),
        "site_name": getattr(meta, "sitename", None),
        "description": getattr(meta, "description", None),
    }


def parse_article(page_html: str, url: str) -> ExtractedArticle | None:
    """Run readability over raw HTML and build an ExtractedArticle.

    Returns None when no main content is found or it is too short.
    CPU-bound; callers on the event loop should run it in an executor.
    """
    doc = Document(page_html, url=url)
    content = doc.summary(html_partial=True)
    if not content or len(content) < MIN_CONTENT_LENGTH:
        return None

    content_md = html_to_markdown(content)
    if not content_md:
        return None

    meta = _read_metadata(page_html, url)

    title = doc.short_title()
    if not title or title == _NO_TITLE:
        title = meta.get("title") or "Untitled"

    return ExtractedArticle(
        url=url,
        title=title.strip(),
        author=meta.get("author") or None,
        content=content,
        content_md=content_md,
        excerpt=meta.get("description") or make_excerpt(content_md),
        site_name=meta.get("site_name") or None,
    )


class ArticleExtractor:
    """Resolves, classifies and extracts the links of a bookmark.

    One attempt per URL; failures become negative results, never
    exceptions, so one bad link cannot sink a batch.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = FETCH_TIMEOUT) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                limits=httpx.Limits(max_connections=10),
                headers=BROWSER_HEADERS,
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this extractor created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def resolve(self, url: str) -> str:
        client = await self._get_client()
        return await resolve_url(client, url)

    async def extract(self, url: str) -> ExtractedArticle | None:
        """Fetch url and extract its article, or None if it is not one."""
        try:
            client = await self._get_client()
            response = await client.get(
                url,
                headers=BROWSER_HEADERS,
                follow_redirects=True,
                timeout=self._timeout,
            )

            if response.status_code >= 400:
                logger.info(f"Skipping {url}: HTTP {response.status_code}")
                return None

            content_type = response.headers.get("content-type", "").lower()
            if "text/html" not in content_type and "application/xhtml" not in content_type:
                logger.info(f"Skipping {url}: content-type {content_type or 'missing'}")
                return None

            page_html = response.text
            loop = asyncio.get_running_loop()
            article = await loop.run_in_executor(None, parse_article, page_html, url)

            if article is None:
                logger.info(f"No article content found at {url}")
            return article

        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch {url}: {type(e).__name__}: {e}")
            return None

        except Exception:
            logger.exception(f"Unexpected error extracting {url}")
            return None

    async def process_links(self, urls: list[str]) -> LinkBatchResult:
        """Resolve, classify and extract each URL, in order.

        Every URL is recorded as a CandidateLink; is_article is only set
        when extraction produced an article.
        """
        result = LinkBatchResult()

        for original_url in urls:
            link = CandidateLink(original_url=original_url, resolved_url=original_url)
            result.links.append(link)
            try:
                link.resolved_url = await self.resolve(original_url)
                if is_likely_article(link.resolved_url):
                    article = await self.extract(link.resolved_url)
                    if article:
                        result.articles.append(article)
                        link.is_article = True
            except Exception:
                logger.exception(f"Error processing link {original_url}")

        return result
