"""LLM cleanup of article text extracted from PDFs."""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)

CLEANER_MODEL = "gpt-4o-mini"
CLEANER_TEMPERATURE = 0.1

# Shorter texts are returned as-is
MIN_CLEAN_LENGTH = 50

CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"

CLEANER_SYSTEM_PROMPT = """You clean up text extracted from a PDF of a web article.

Keep only the main article: title, subtitle, byline and body paragraphs.
Remove navigation, cookie banners, newsletter prompts, share buttons, ads,
related-article lists, comments and page headers or footers.
Rejoin words and sentences broken across lines or pages.
Do not summarize, shorten or rephrase the article text.
Return plain text only, with a blank line between paragraphs."""


class ArticleCleaner:
    """Best-effort article cleanup via OpenAI chat completions.

    Never raises for API problems: any failure returns the input text.
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = CLEANER_MODEL,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def clean(self, text: str) -> str:
        if not text or len(text.strip()) < MIN_CLEAN_LENGTH:
            return text
        if not self._api_key:
            logger.info("Skipping article cleanup: OpenAI API key not configured")
            return text

        client = await self._get_client()
        try:
            response = await client.post(
                CHAT_COMPLETIONS_URL,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self._model,
                    "temperature": CLEANER_TEMPERATURE,
                    "messages": [
                        {"role": "system", "content": CLEANER_SYSTEM_PROMPT},
                        {"role": "user", "content": text},
                    ],
                },
            )
            response.raise_for_status()
            data = response.json()
            cleaned = (data["choices"][0]["message"]["content"] or "").strip()

        except httpx.HTTPStatusError as e:
            logger.warning(f"Article cleanup failed: OpenAI API error {e.response.status_code}")
            return text

        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"Article cleanup failed: {type(e).__name__}: {e}")
            return text

        if not cleaned:
            logger.warning("Article cleanup returned an empty answer, keeping original text")
            return text

        logger.info(f"Cleaned article text: {len(text)} -> {len(cleaned)} chars")
        return cleaned
