from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from xmarks.core.exporter import export_bookmarks, resolve_export_file
from xmarks.core.ingest import (
    BookmarkPayload,
    ExtractionError,
    IngestionOrchestrator,
    NotFoundError,
    ValidationError,
)
from xmarks.core.settings import Settings
from xmarks.core.storage import connect
from xmarks.core.transcription import TranscriptionError

logger = logging.getLogger(__name__)

# Seconds to wait for background enrichment on shutdown
SHUTDOWN_DRAIN_TIMEOUT = 30.0


class TranscribeRequest(BaseModel):
    videoUrl: str = ""


class ArticleAttachRequest(BaseModel):
    url: str | None = None
    text: str | None = None
    title: str | None = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    settings: Settings | None = None,
    orchestrator: IngestionOrchestrator | None = None,
) -> FastAPI:
    """Build the API application.

    The orchestrator (and with it the database) is created on startup
    unless one is passed in.
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    for directory in (settings.media_dir, settings.articles_dir, settings.temp_audio_dir, settings.exports_dir):
        directory.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orch = orchestrator or IngestionOrchestrator(connect(settings.db_path), settings)
        app.state.orchestrator = orch
        logger.info(f"xmarks ready (data dir: {settings.data_dir})")
        try:
            yield
        finally:
            await orch.tracker.drain(timeout=SHUTDOWN_DRAIN_TIMEOUT)
            await orch.close()

    app = FastAPI(title="xmarks", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.mount("/media", StaticFiles(directory=str(settings.media_dir)), name="media")
    app.mount("/articles", StaticFiles(directory=str(settings.articles_dir)), name="articles")

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(ExtractionError)
    async def _extraction_error(request: Request, exc: ExtractionError):
        return _error(422, str(exc))

    @app.exception_handler(TranscriptionError)
    async def _transcription_error(request: Request, exc: TranscriptionError):
        logger.error(f"Transcription failed: {exc}")
        return _error(500, str(exc))

    @app.exception_handler(sqlite3.Error)
    async def _storage_error(request: Request, exc: sqlite3.Error):
        logger.error(f"Storage error on {request.method} {request.url.path}: {type(exc).__name__}: {exc}")
        return _error(500, f"Storage error: {exc}")

    def orch_of(request: Request) -> IngestionOrchestrator:
        return request.app.state.orchestrator

    # ── Bookmarks ────────────────────────────────────────────

    @app.post("/api/bookmarks")
    async def api_save_bookmark(payload: BookmarkPayload, request: Request):
        """Save a bookmark from the userscript.

        Responds once the bookmark row is written; media and articles
        are fetched in the background.
        """
        enrichment = await orch_of(request).ingest(payload)
        return {"status": "success", "saved": True, "enrichment": enrichment}

    @app.get("/api/bookmarks")
    async def api_list_bookmarks(request: Request) -> list[dict[str, Any]]:
        return orch_of(request).db.list_enriched_bookmarks()

    @app.get("/api/bookmarks/search")
    async def api_search_bookmarks(request: Request, q: str = "") -> list[dict[str, Any]]:
        db = orch_of(request).db
        return db.enrich_bookmarks(db.search_bookmarks(q))

    @app.get("/api/bookmarks/{bookmark_id}/enrichment")
    async def api_enrichment_status(request: Request, bookmark_id: str, wait: bool = False, timeout: float = 30.0):
        """Status of the latest background enrichment of a bookmark.

        With wait=true the response is held until the job finishes or
        timeout seconds pass.
        """
        orch = orch_of(request)
        if orch.db.get_bookmark(bookmark_id) is None:
            raise NotFoundError(f"Bookmark not found: {bookmark_id}")

        if wait:
            job = await orch.tracker.wait(bookmark_id, timeout=timeout)
        else:
            job = orch.tracker.get(bookmark_id)

        if job is None:
            return {"bookmark_id": bookmark_id, "status": "idle"}
        return job.to_dict()

    @app.delete("/api/bookmarks/{bookmark_id}")
    async def api_delete_bookmark(request: Request, bookmark_id: str):
        if not orch_of(request).delete_bookmark(bookmark_id):
            raise NotFoundError(f"Bookmark not found: {bookmark_id}")
        return {"status": "success", "deleted": bookmark_id}

    @app.delete("/api/bookmarks")
    async def api_delete_all_bookmarks(request: Request):
        count = orch_of(request).delete_all()
        return {"status": "success", "deleted": count}

    # ── Transcripts ──────────────────────────────────────────

    @app.post("/api/bookmarks/{bookmark_id}/transcribe")
    async def api_transcribe(request: Request, bookmark_id: str, body: TranscribeRequest):
        result = await orch_of(request).transcribe(bookmark_id, body.videoUrl)
        return {
            "transcript": result.transcript,
            "strategy": result.strategy.value,
            "videoUrl": result.video_url,
        }

    # ── Articles ─────────────────────────────────────────────

    @app.post("/api/bookmarks/{bookmark_id}/articles")
    async def api_attach_article(request: Request, bookmark_id: str, body: ArticleAttachRequest):
        """Attach an article by URL ({url}) or as pasted text ({text, title?})."""
        orch = orch_of(request)
        if body.url and body.url.strip():
            article = await orch.attach_article_url(bookmark_id, body.url)
        elif body.text and body.text.strip():
            article = orch.attach_article_text(bookmark_id, body.text, body.title)
        else:
            raise ValidationError("Provide either url or text")
        return {"status": "success", "article": article}

    @app.post("/api/bookmarks/{bookmark_id}/articles/pdf")
    async def api_attach_pdf(
        request: Request,
        bookmark_id: str,
        file: UploadFile = File(...),
        clean: bool = Form(False),
    ):
        data = await file.read()
        article = await orch_of(request).attach_pdf(bookmark_id, data, filename=file.filename, clean=clean)
        return {"status": "success", "article": article}

    @app.delete("/api/articles/{article_id}")
    async def api_delete_article(request: Request, article_id: int):
        if not orch_of(request).db.delete_article(article_id):
            raise NotFoundError(f"Article not found: {article_id}")
        return {"status": "success", "deleted": article_id}

    # ── Stats & export ───────────────────────────────────────

    @app.get("/api/stats")
    async def api_stats(request: Request):
        return orch_of(request).db.get_stats()

    @app.post("/api/export")
    async def api_export(request: Request):
        result = await run_in_threadpool(export_bookmarks, orch_of(request).db, settings.exports_dir)
        return {"status": "success", "filename": result.filename, "bookmarks": result.bookmark_count}

    @app.get("/api/export/{filename}")
    async def api_download_export(filename: str):
        path = resolve_export_file(settings.exports_dir, filename)
        if path is None:
            raise NotFoundError(f"Export not found: {filename}")
        return FileResponse(str(path), media_type="application/zip", filename=filename)

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run("xmarks.main:create_app", factory=True, host=settings.host, port=settings.port)
