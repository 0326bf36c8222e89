"""Tests for exporter.py"""

import zipfile
from datetime import date

import pytest

from xmarks.core.article_extractor import ExtractedArticle
from xmarks.core.exporter import export_bookmarks, resolve_export_file, slugify
from xmarks.core.storage import connect


@pytest.fixture
def db():
    db = connect(":memory:")
    db.upsert_bookmark("100", "https://x.com/alice/status/100", "Alice Example\n@alice", "First post")
    db.replace_media("100", ["/media/100/a.jpg"])
    db.add_article(
        "100",
        ExtractedArticle(
            url="https://example.com/essay",
            title="An Essay",
            author="Alice",
            content="<p>Essay body</p>",
            content_md="Essay body in markdown",
            excerpt="A short teaser",
            site_name="Example",
        ),
    )
    db.upsert_transcript("100", "https://video.example/1", "spoken words")
    db.upsert_bookmark("200", "https://x.com/bob/status/200", "Bob", "")
    return db


class TestSlugify:
    def test_basic(self):
        assert slugify("Alice Example!") == "alice-example"

    def test_max_len(self):
        assert len(slugify("a" * 80)) == 50


class TestExport:
    def test_writes_files_and_zip(self, db, tmp_path):
        result = export_bookmarks(db, tmp_path, today=date(2025, 1, 31))

        assert result.filename == "xmarks_2025-01-31.zip"
        assert result.bookmark_count == 2
        files = sorted(p.name for p in (result.export_dir / "bookmarks").iterdir())
        # most recent first
        assert files == ["001_bob_200.md", "002_alice-example_100.md"]

        with zipfile.ZipFile(result.zip_path) as zf:
            names = set(zf.namelist())
        assert "xmarks_2025-01-31/index.md" in names
        assert "xmarks_2025-01-31/bookmarks/002_alice-example_100.md" in names

    def test_bookmark_markdown(self, db, tmp_path):
        result = export_bookmarks(db, tmp_path, today=date(2025, 1, 31))
        md = (result.export_dir / "bookmarks" / "002_alice-example_100.md").read_text(encoding="utf-8")

        assert md.startswith("# Alice Example\n")
        assert "> Post: [https://x.com/alice/status/100](https://x.com/alice/status/100)" in md
        assert "## Post\n\nFirst post" in md
        assert "![media](/media/100/a.jpg)" in md
        assert "## 📄 An Essay" in md
        assert "*By Alice*" in md
        assert "*Source: Example*" in md
        assert "> A short teaser" in md
        assert "Essay body in markdown" in md
        assert "## 🎥 Video Transcript" in md
        assert "spoken words" in md

    def test_empty_sections_omitted(self, db, tmp_path):
        result = export_bookmarks(db, tmp_path, today=date(2025, 1, 31))
        md = (result.export_dir / "bookmarks" / "001_bob_200.md").read_text(encoding="utf-8")

        assert "## Post" not in md
        assert "## Media" not in md
        assert "Video Transcript" not in md

    def test_index(self, db, tmp_path):
        result = export_bookmarks(db, tmp_path, today=date(2025, 1, 31))
        index = (result.export_dir / "index.md").read_text(encoding="utf-8")

        assert "**2 bookmarks**" in index
        assert "1. [Bob](bookmarks/001_bob_200.md) - 0 article(s)" in index
        assert "2. [Alice Example](bookmarks/002_alice-example_100.md) - 1 article(s)" in index

    def test_same_day_export_replaced(self, db, tmp_path):
        export_bookmarks(db, tmp_path, today=date(2025, 1, 31))
        db.delete_bookmark("200")
        result = export_bookmarks(db, tmp_path, today=date(2025, 1, 31))

        assert [p.name for p in (result.export_dir / "bookmarks").iterdir()] == ["001_alice-example_100.md"]


class TestResolveExportFile:
    def test_existing_archive(self, tmp_path):
        (tmp_path / "xmarks_2025-01-31.zip").write_bytes(b"PK")
        assert resolve_export_file(tmp_path, "xmarks_2025-01-31.zip") == tmp_path / "xmarks_2025-01-31.zip"

    @pytest.mark.parametrize("name", ["../secret.zip", "xmarks_/../x.zip", "other.zip", "xmarks_2025.txt"])
    def test_rejects_unsafe_names(self, tmp_path, name):
        assert resolve_export_file(tmp_path, name) is None

    def test_missing_archive(self, tmp_path):
        assert resolve_export_file(tmp_path, "xmarks_2099-01-01.zip") is None
