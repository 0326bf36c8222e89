"""Bookmark ingestion and enrichment orchestration.

ingest() writes the bookmark synchronously, decides which enrichment
fan-outs are needed and hands them to the EnrichmentTracker. Media and
article work then runs in the background; the caller never waits for it.

Gating: a fan-out runs only while the bookmark has no rows of that kind,
unless the payload forces it. Forced runs replace the existing rows.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pypdf.errors import PdfReadError

from xmarks.core.article_cleaner import ArticleCleaner
from xmarks.core.article_extractor import ArticleExtractor, ExtractedArticle, make_excerpt, text_to_html
from xmarks.core.enrich_job import EnrichmentJob, EnrichmentTracker
from xmarks.core.media_service import MediaDownloader
from xmarks.core.pdf_service import extract_text_from_pdf, save_pdf_for_bookmark
from xmarks.core.settings import Settings
from xmarks.core.storage import DB, SYNTHETIC_SITE_NAME, sanitize_bookmark_id
from xmarks.core.transcription import TranscriptionResult, TranscriptionService, TranscriptionStrategy

logger = logging.getLogger(__name__)

SYNTHETIC_TITLE_LENGTH = 100


class ValidationError(Exception):
    """Request is missing required input."""


class NotFoundError(Exception):
    """Referenced bookmark does not exist."""


class ExtractionError(Exception):
    """A manually attached URL did not yield an article."""


class BookmarkPayload(BaseModel):
    """Bookmark as posted by the userscript.

    Every optional field has an explicit default; nulls are treated as
    missing.
    """

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    url: str = ""
    author: str = ""
    text: str = ""
    threadText: str = ""
    media: list[str] = Field(default_factory=list)
    links: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    forceExtract: bool = False
    forceMedia: bool = False

    @field_validator("url", "author", "text", "threadText", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("media", "links", "tags", mode="before")
    @classmethod
    def _clean_list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return [str(item).strip() for item in v if item is not None and str(item).strip()]
        return v

    @field_validator("forceExtract", "forceMedia", mode="before")
    @classmethod
    def _none_to_false(cls, v: Any) -> Any:
        return False if v is None else v

    @property
    def candidate_text(self) -> str:
        """The longer of threadText and text, used for the synthetic article."""
        thread = self.threadText.strip()
        text = self.text.strip()
        return thread if len(thread) > len(text) else text


def build_synthetic_article(text: str, author: str | None = None) -> ExtractedArticle:
    """Wrap a post's own text as an article so it is searchable like one."""
    content_md = text.strip()
    first_line = next((line.strip() for line in content_md.splitlines() if line.strip()), "")
    title = first_line[:SYNTHETIC_TITLE_LENGTH] or (f"Post by {author}" if author else "Post")
    return ExtractedArticle(
        url="",
        title=title,
        author=author or None,
        content=text_to_html(content_md),
        content_md=content_md,
        excerpt=make_excerpt(content_md),
        site_name=SYNTHETIC_SITE_NAME,
    )


class IngestionOrchestrator:
    """Entry point for every operation that writes bookmark data."""

    def __init__(
        self,
        db: DB,
        settings: Settings,
        extractor: ArticleExtractor | None = None,
        downloader: MediaDownloader | None = None,
        transcriber: TranscriptionService | None = None,
        cleaner: ArticleCleaner | None = None,
        tracker: EnrichmentTracker | None = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.extractor = extractor or ArticleExtractor()
        self.downloader = downloader or MediaDownloader()
        self.transcriber = transcriber or TranscriptionService.from_settings(settings)
        self.cleaner = cleaner or ArticleCleaner(api_key=settings.resolve_openai_key())
        self.tracker = tracker or EnrichmentTracker()

    @property
    def media_dir(self) -> Path:
        return self.settings.media_dir

    @property
    def articles_dir(self) -> Path:
        return self.settings.articles_dir

    async def close(self) -> None:
        await self.extractor.close()
        await self.downloader.close()
        await self.transcriber.close()
        await self.cleaner.close()

    def _require_bookmark(self, bookmark_id: str) -> dict[str, Any]:
        bookmark = self.db.get_bookmark(bookmark_id)
        if bookmark is None:
            raise NotFoundError(f"Bookmark not found: {bookmark_id}")
        return bookmark

    # ── Gating ───────────────────────────────────────────────

    def _needs_media(self, bookmark_id: str, urls: list[str], force: bool) -> bool:
        if not urls:
            return False
        return force or self.db.count_media(bookmark_id) == 0

    def _needs_articles(self, bookmark_id: str, links: list[str], candidate: str, force: bool) -> bool:
        if links:
            return force or self.db.count_articles(bookmark_id) == 0
        if not candidate:
            return False
        if force:
            return True
        # Post text is only a fallback for bookmarks without extracted articles
        if self.db.count_linked_articles(bookmark_id) > 0:
            return False
        existing = self.db.get_synthetic_article_length(bookmark_id)
        # Never replace a richer capture with a shorter one
        return existing is None or len(candidate) > existing

    # ── Ingestion ────────────────────────────────────────────

    async def ingest(self, payload: BookmarkPayload) -> dict[str, Any]:
        """Save a bookmark and schedule its enrichment.

        Returns as soon as the bookmark row is written. The returned
        dict describes the scheduled enrichment job.

        Raises:
            ValidationError: If the payload has no id.
        """
        bookmark_id = (payload.id or "").strip()
        if not bookmark_id:
            raise ValidationError("Missing bookmark id")

        created = self.db.upsert_bookmark(
            bookmark_id,
            url=payload.url,
            author=payload.author,
            text=payload.text,
            tags=payload.tags,
        )
        logger.info(f"{'Saved' if created else 'Updated'} bookmark {bookmark_id} by {payload.author or 'unknown'}")

        media_urls = list(payload.media)
        links = list(payload.links)
        candidate = payload.candidate_text
        run_media = self._needs_media(bookmark_id, media_urls, payload.forceMedia)
        run_articles = self._needs_articles(bookmark_id, links, candidate, payload.forceExtract)

        async def work(job: EnrichmentJob) -> None:
            await self._enrich(
                job,
                bookmark_id=bookmark_id,
                media_urls=media_urls if run_media else [],
                links=links,
                candidate=candidate,
                author=payload.author,
                force_media=payload.forceMedia,
                force_extract=payload.forceExtract,
                run_articles=run_articles,
            )

        job = self.tracker.start(bookmark_id, work, media=run_media, articles=run_articles)
        return {"created": created, **job.to_dict()}

    async def _enrich(
        self,
        job: EnrichmentJob,
        bookmark_id: str,
        media_urls: list[str],
        links: list[str],
        candidate: str,
        author: str,
        force_media: bool,
        force_extract: bool,
        run_articles: bool,
    ) -> None:
        """Run the scheduled fan-outs concurrently; both always get to finish."""
        steps = []
        if media_urls:
            steps.append(self._media_fanout(job, bookmark_id, media_urls, force_media))
        if run_articles:
            steps.append(self._article_fanout(job, bookmark_id, links, candidate, author, force_extract))

        results = await asyncio.gather(*steps, return_exceptions=True)
        errors = [r for r in results if isinstance(r, Exception)]
        for extra in errors[1:]:
            logger.error(f"Additional enrichment failure for {bookmark_id}", exc_info=extra)
        if errors:
            raise errors[0]

    async def _media_fanout(self, job: EnrichmentJob, bookmark_id: str, urls: list[str], force: bool) -> None:
        # A concurrent run may have stored media while this one waited for the lock
        if not force and self.db.count_media(bookmark_id) > 0:
            logger.info(f"Media for {bookmark_id} already stored, skipping")
            return

        results = await asyncio.gather(
            *(self.downloader.download(self.media_dir, url, bookmark_id) for url in urls),
            return_exceptions=True,
        )

        stored = []
        for url, result in zip(urls, results):
            if isinstance(result, Exception):
                logger.warning(f"Media download crashed for {url}: {type(result).__name__}: {result}")
                stored.append(url)
            elif result:
                stored.append(result)
            else:
                # Blocked or failed: keep pointing at the remote file
                stored.append(url)

        self.db.replace_media(bookmark_id, stored)
        job.media_saved = len(stored)
        local = sum(1 for u in stored if u.startswith("/media/"))
        logger.info(f"Stored {len(stored)} media for {bookmark_id} ({local} cached locally)")

    async def _article_fanout(
        self,
        job: EnrichmentJob,
        bookmark_id: str,
        links: list[str],
        candidate: str,
        author: str,
        force: bool,
    ) -> None:
        if not force and not self._needs_articles(bookmark_id, links, candidate, force):
            logger.info(f"Articles for {bookmark_id} already stored, skipping")
            return

        if not links:
            self.db.replace_synthetic_article(bookmark_id, build_synthetic_article(candidate, author))
            job.articles_saved = 1
            logger.info(f"Stored post text of {bookmark_id} as article ({len(candidate)} chars)")
            return

        result = await self.extractor.process_links(links)
        articles = list(result.articles)
        if not articles and candidate:
            articles.append(build_synthetic_article(candidate, author))

        self.db.replace_links_and_articles(bookmark_id, result.links, articles)
        job.links_seen = len(result.links)
        job.articles_saved = len(articles)
        logger.info(
            f"Processed {len(result.links)} links for {bookmark_id}: "
            f"{len(result.articles)} articles extracted"
        )

    # ── Transcription ────────────────────────────────────────

    async def transcribe(self, bookmark_id: str, video_url: str) -> TranscriptionResult:
        """Transcribe a video of a bookmark, reusing a stored transcript if any.

        Raises:
            ValidationError: If video_url is empty.
            NotFoundError: If the bookmark does not exist.
            TranscriptionError: If the pipeline fails.
        """
        video_url = (video_url or "").strip()
        if not video_url:
            raise ValidationError("Missing videoUrl")
        self._require_bookmark(bookmark_id)

        cached = self.db.get_transcript(bookmark_id, video_url)
        if cached is not None:
            logger.info(f"Using cached transcript for {bookmark_id}")
            return TranscriptionResult(
                transcript=cached["transcript"] or "",
                video_url=video_url,
                strategy=TranscriptionStrategy.CACHED,
            )

        result = await self.transcriber.transcribe(video_url, bookmark_id)
        self.db.upsert_transcript(bookmark_id, video_url, result.transcript)
        return result

    # ── Manual article attach ────────────────────────────────

    async def attach_article_url(self, bookmark_id: str, url: str) -> dict[str, Any]:
        """Extract the article at url and add it to the bookmark.

        Raises:
            ValidationError: If url is empty.
            NotFoundError: If the bookmark does not exist.
            ExtractionError: If no article could be extracted.
        """
        url = (url or "").strip()
        if not url:
            raise ValidationError("Missing url")
        self._require_bookmark(bookmark_id)

        resolved = await self.extractor.resolve(url)
        article = await self.extractor.extract(resolved)
        if article is None:
            raise ExtractionError(f"Could not extract an article from {url}")

        article_id = self.db.add_article(bookmark_id, article)
        logger.info(f"Attached article {article_id} ({article.title}) to {bookmark_id}")
        return {"id": article_id, "title": article.title, "url": article.url}

    def attach_article_text(self, bookmark_id: str, text: str, title: str | None = None) -> dict[str, Any]:
        """Store pasted text or Markdown as an article of the bookmark."""
        content_md = (text or "").strip()
        if not content_md:
            raise ValidationError("Missing article text")
        bookmark = self._require_bookmark(bookmark_id)

        if not (title or "").strip():
            first_line = next((line.strip() for line in content_md.splitlines() if line.strip()), "")
            title = first_line.lstrip("# ").strip()[:SYNTHETIC_TITLE_LENGTH] or "Pasted article"

        article = ExtractedArticle(
            url="",
            title=title.strip(),
            author=bookmark.get("author") or None,
            content=text_to_html(content_md),
            content_md=content_md,
            excerpt=make_excerpt(content_md),
        )
        article_id = self.db.add_article(bookmark_id, article)
        logger.info(f"Attached pasted article {article_id} to {bookmark_id}")
        return {"id": article_id, "title": article.title, "url": ""}

    async def attach_pdf(
        self,
        bookmark_id: str,
        data: bytes,
        filename: str | None = None,
        clean: bool = False,
    ) -> dict[str, Any]:
        """Save an uploaded PDF and store its text as an article.

        Raises:
            ValidationError: If the upload is empty or not a readable PDF.
            NotFoundError: If the bookmark does not exist.
        """
        if not data:
            raise ValidationError("Empty PDF upload")
        self._require_bookmark(bookmark_id)

        saved = save_pdf_for_bookmark(self.articles_dir, bookmark_id, data)
        loop = asyncio.get_running_loop()
        try:
            text = await loop.run_in_executor(None, extract_text_from_pdf, saved.full_path)
        except PdfReadError as e:
            saved.full_path.unlink(missing_ok=True)
            raise ValidationError(f"Could not read PDF: {e}") from e

        if clean and text:
            text = await self.cleaner.clean(text)

        display_name = filename or saved.full_path.name
        title = Path(display_name).stem or "PDF"
        content_md = text.strip() or f"_No extractable text in {display_name}._"

        article = ExtractedArticle(
            url="",
            title=title,
            content=text_to_html(content_md),
            content_md=content_md,
            excerpt=make_excerpt(content_md),
            pdf_path=saved.url_path,
        )
        article_id = self.db.add_article(bookmark_id, article)
        logger.info(f"Attached PDF {saved.relative_path} ({len(text)} chars) to {bookmark_id}")
        return {"id": article_id, "title": title, "pdf_path": saved.url_path, "chars": len(text)}

    # ── Deletion ─────────────────────────────────────────────

    def _remove_dir(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")

    def _empty_dir(self, path: Path) -> None:
        """Remove everything inside path; the directory itself stays mounted."""
        if not path.is_dir():
            return
        for child in path.iterdir():
            if child.is_dir():
                self._remove_dir(child)
            else:
                try:
                    child.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove {child}: {e}")

    def delete_bookmark(self, bookmark_id: str) -> bool:
        """Delete a bookmark, its child rows and its cached files."""
        deleted = self.db.delete_bookmark(bookmark_id)
        if deleted:
            safe_id = sanitize_bookmark_id(bookmark_id)
            self._remove_dir(self.media_dir / safe_id)
            self._remove_dir(self.articles_dir / safe_id)
            self.tracker.forget(bookmark_id)
            logger.info(f"Deleted bookmark {bookmark_id}")
        return deleted

    def delete_all(self) -> int:
        count = self.db.delete_all_bookmarks()
        self._empty_dir(self.media_dir)
        self._empty_dir(self.articles_dir)
        self.tracker.clear()
        logger.info(f"Deleted all {count} bookmarks")
        return count
