"""Tests for the HTTP API in main.py"""

import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from xmarks.core.article_cleaner import ArticleCleaner
from xmarks.core.article_extractor import ArticleExtractor, CandidateLink, ExtractedArticle, LinkBatchResult
from xmarks.core.ingest import IngestionOrchestrator
from xmarks.core.media_service import MediaDownloader
from xmarks.core.storage import connect
from xmarks.core.transcription import TranscriptionError, TranscriptionResult, TranscriptionService, TranscriptionStrategy
from xmarks.main import create_app

EXTRACTED = ExtractedArticle(
    url="https://example.com/essay",
    title="Essay",
    content="<p>An essay about tidepools</p>",
    content_md="An essay about tidepools",
)


@pytest.fixture
def orchestrator(settings):
    extractor = MagicMock(spec=ArticleExtractor)
    extractor.process_links = AsyncMock(
        side_effect=lambda urls: LinkBatchResult(
            links=[CandidateLink(u, "https://example.com/essay", True) for u in urls],
            articles=[EXTRACTED],
        )
    )
    extractor.resolve = AsyncMock(side_effect=lambda url: url)
    extractor.extract = AsyncMock(return_value=EXTRACTED)

    downloader = MagicMock(spec=MediaDownloader)
    downloader.download = AsyncMock(side_effect=lambda media_dir, url, bid: f"/media/{bid}/{url.rsplit('/', 1)[-1]}")

    transcriber = MagicMock(spec=TranscriptionService)
    transcriber.transcribe = AsyncMock(
        return_value=TranscriptionResult("spoken words", "https://video.example/v", TranscriptionStrategy.CHUNKED)
    )

    return IngestionOrchestrator(
        connect(":memory:"),
        settings,
        extractor=extractor,
        downloader=downloader,
        transcriber=transcriber,
        cleaner=MagicMock(spec=ArticleCleaner),
    )


@pytest.fixture
def client(settings, orchestrator):
    app = create_app(settings, orchestrator=orchestrator)
    with TestClient(app) as c:
        yield c


def save(client, **payload):
    response = client.post("/api/bookmarks", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


class TestBookmarks:
    def test_missing_id_is_400(self, client):
        response = client.post("/api/bookmarks", json={"text": "no id"})
        assert response.status_code == 400
        assert "error" in response.json()

    def test_save_then_list_enriched(self, client):
        body = save(client, id="1", url="https://x.com/a/status/1", author="alice", text="look",
                    media=["https://pbs.twimg.com/media/a.jpg"], links=["https://t.co/x"])
        assert body["status"] == "success"
        assert body["saved"] is True
        assert body["enrichment"]["media"] is True
        assert body["enrichment"]["articles"] is True

        status = client.get("/api/bookmarks/1/enrichment", params={"wait": True}).json()
        assert status["status"] == "completed"

        (bookmark,) = client.get("/api/bookmarks").json()
        assert bookmark["id"] == "1"
        assert bookmark["media"] == ["/media/1/a.jpg"]
        assert bookmark["articles"][0]["title"] == "Essay"
        assert bookmark["transcripts"] == []

    def test_enrichment_status_unknown_bookmark(self, client):
        assert client.get("/api/bookmarks/nope/enrichment").status_code == 404

    def test_search(self, client):
        save(client, id="1", text="nothing", links=["https://t.co/x"])
        save(client, id="2", text="other")
        client.get("/api/bookmarks/1/enrichment", params={"wait": True})
        client.get("/api/bookmarks/2/enrichment", params={"wait": True})

        results = client.get("/api/bookmarks/search", params={"q": "tidepool"}).json()
        assert [b["id"] for b in results] == ["1"]
        assert client.get("/api/bookmarks/search", params={"q": ""}).json() == []

    def test_delete_one_and_all(self, client):
        save(client, id="1", text="a")
        save(client, id="2", text="b")

        assert client.delete("/api/bookmarks/1").status_code == 200
        assert client.delete("/api/bookmarks/1").status_code == 404
        assert client.delete("/api/bookmarks").json()["deleted"] == 1
        assert client.get("/api/bookmarks").json() == []

    def test_stats(self, client):
        save(client, id="1", text="a")
        client.get("/api/bookmarks/1/enrichment", params={"wait": True})
        stats = client.get("/api/stats").json()
        assert stats["totalBookmarks"] == 1
        assert stats["totalArticles"] == 1
        assert stats["lastSynced"]


class TestTranscribe:
    def test_transcribe_and_cache(self, client):
        save(client, id="1", text="video post")

        first = client.post("/api/bookmarks/1/transcribe", json={"videoUrl": "https://video.example/v"}).json()
        assert first == {"transcript": "spoken words", "strategy": "chunked", "videoUrl": "https://video.example/v"}

        second = client.post("/api/bookmarks/1/transcribe", json={"videoUrl": "https://video.example/v"}).json()
        assert second["strategy"] == "cached"
        assert second["transcript"] == "spoken words"

    def test_unknown_bookmark_is_404(self, client):
        response = client.post("/api/bookmarks/missing/transcribe", json={"videoUrl": "https://video.example/v"})
        assert response.status_code == 404

    def test_missing_video_url_is_400(self, client):
        save(client, id="1", text="x")
        assert client.post("/api/bookmarks/1/transcribe", json={}).status_code == 400

    def test_pipeline_failure_is_500(self, client, orchestrator):
        orchestrator.transcriber.transcribe.side_effect = TranscriptionError("yt-dlp failed")
        save(client, id="1", text="x")

        response = client.post("/api/bookmarks/1/transcribe", json={"videoUrl": "https://video.example/v"})

        assert response.status_code == 500
        assert response.json() == {"error": "yt-dlp failed"}

    def test_storage_failure_is_json_500(self, client, orchestrator):
        save(client, id="1", text="x")
        orchestrator.db.upsert_transcript = MagicMock(
            side_effect=sqlite3.IntegrityError("FOREIGN KEY constraint failed")
        )

        response = client.post("/api/bookmarks/1/transcribe", json={"videoUrl": "https://video.example/v"})

        assert response.status_code == 500
        assert response.json() == {"error": "Storage error: FOREIGN KEY constraint failed"}


class TestArticles:
    def test_attach_text(self, client):
        save(client, id="1", text="x")
        response = client.post("/api/bookmarks/1/articles", json={"text": "Pasted body", "title": "Mine"})
        assert response.status_code == 200
        assert response.json()["article"]["title"] == "Mine"

    def test_attach_url(self, client):
        save(client, id="1", text="x")
        response = client.post("/api/bookmarks/1/articles", json={"url": "https://example.com/essay"})
        assert response.json()["article"]["title"] == "Essay"

    def test_attach_url_failure_is_422(self, client, orchestrator):
        orchestrator.extractor.extract.return_value = None
        save(client, id="1", text="x")
        response = client.post("/api/bookmarks/1/articles", json={"url": "https://example.com/paywall"})
        assert response.status_code == 422

    def test_attach_without_input_is_400(self, client):
        save(client, id="1", text="x")
        assert client.post("/api/bookmarks/1/articles", json={}).status_code == 400

    def test_attach_pdf_and_serve_it(self, client, text_pdf):
        save(client, id="1", text="x")
        response = client.post(
            "/api/bookmarks/1/articles/pdf",
            files={"file": ("paper.pdf", text_pdf("Results section"), "application/pdf")},
        )
        assert response.status_code == 200, response.text
        pdf_path = response.json()["article"]["pdf_path"]

        served = client.get(f"/articles/{pdf_path}")
        assert served.status_code == 200
        assert served.content.startswith(b"%PDF")

    def test_delete_article(self, client):
        save(client, id="1", text="x")
        article_id = client.post("/api/bookmarks/1/articles", json={"text": "body"}).json()["article"]["id"]

        assert client.delete(f"/api/articles/{article_id}").status_code == 200
        assert client.delete(f"/api/articles/{article_id}").status_code == 404


class TestExport:
    def test_export_and_download(self, client):
        save(client, id="1", author="alice", text="hello")
        filename = client.post("/api/export").json()["filename"]
        assert filename.startswith("xmarks_") and filename.endswith(".zip")

        response = client.get(f"/api/export/{filename}")
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert response.content.startswith(b"PK")

    def test_download_unknown_export(self, client):
        assert client.get("/api/export/xmarks_1999-01-01.zip").status_code == 404


class TestStatic:
    def test_media_is_served(self, client, settings):
        (settings.media_dir / "1").mkdir(parents=True, exist_ok=True)
        (settings.media_dir / "1" / "a.jpg").write_bytes(b"jpeg")
        assert client.get("/media/1/a.jpg").content == b"jpeg"
