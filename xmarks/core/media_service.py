"""Local caching of media attached to bookmarks.

Files land in <media_dir>/<sanitized bookmark id>/<name from URL path>.
A file that is already on disk is never fetched again.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from urllib.parse import urlparse

import httpx

from xmarks.core.storage import sanitize_bookmark_id

logger = logging.getLogger(__name__)

MIME_TO_EXT = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
}

DEFAULT_EXT = ".jpg"
DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 2
RETRY_DELAY = 1.0

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


def filename_from_url(url: str) -> str:
    """Last path segment of url (query and fragment dropped), or a timestamp name."""
    name = os.path.basename(urlparse(url).path)
    if not name:
        name = f"img_{int(time.time() * 1000)}"
    return name


def public_media_path(safe_id: str, filename: str) -> str:
    return f"/media/{safe_id}/{filename}"


def _find_existing(dest_dir: Path, filename: str) -> Path | None:
    """A previously downloaded file for this name, if any.

    Names without extension get one at download time, so any
    <name>.<ext> sibling counts.
    """
    candidate = dest_dir / filename
    if Path(filename).suffix:
        return candidate if candidate.is_file() else None
    if not dest_dir.is_dir():
        return None
    for path in sorted(dest_dir.iterdir()):
        if path.is_file() and path.stem == filename and path.suffix:
            return path
    return None


class MediaDownloader:
    """Downloads media with bounded retries.

    A 403 means the CDN refuses unauthenticated fetches; that is final
    and the caller keeps the remote URL instead.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._retries = retries
        self._retry_delay = retry_delay

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def download(self, media_dir: str | Path, url: str, bookmark_id: str) -> str | None:
        """Cache url for bookmark_id under media_dir.

        Returns the public /media/... path of the local copy, or None
        when the file could not be fetched.
        """
        safe_id = sanitize_bookmark_id(bookmark_id)
        dest_dir = Path(media_dir) / safe_id
        filename = filename_from_url(url)

        existing = _find_existing(dest_dir, filename)
        if existing is not None:
            logger.debug(f"Already cached: {existing}")
            return public_media_path(safe_id, existing.name)

        client = await self._get_client()

        for attempt in range(self._retries + 1):
            try:
                response = await client.get(url, headers={"User-Agent": USER_AGENT}, timeout=self._timeout)

                if response.status_code == 403:
                    logger.warning(f"403 Forbidden for {url}, keeping remote URL")
                    return None

                if not response.is_success:
                    logger.warning(
                        f"Failed to download {url}: HTTP {response.status_code} "
                        f"(attempt {attempt + 1}/{self._retries + 1})"
                    )
                else:
                    final_name = filename
                    if not Path(final_name).suffix:
                        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
                        final_name += MIME_TO_EXT.get(content_type, DEFAULT_EXT)

                    dest_dir.mkdir(parents=True, exist_ok=True)
                    file_path = dest_dir / final_name
                    if not file_path.exists():
                        file_path.write_bytes(response.content)
                        logger.info(f"Downloaded {final_name} ({round(len(response.content) / 1024)}KB)")
                    return public_media_path(safe_id, final_name)

            except httpx.HTTPError as e:
                logger.warning(
                    f"Error downloading {url} (attempt {attempt + 1}/{self._retries + 1}): "
                    f"{type(e).__name__}: {e}"
                )

            if attempt < self._retries:
                await asyncio.sleep(self._retry_delay)

        return None
