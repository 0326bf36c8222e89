"""Markdown export of all bookmarks as a zip archive."""

from __future__ import annotations

import logging
import re
import shutil
import zipfile
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from xmarks.core.storage import DB, sanitize_bookmark_id

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates" / "export"

EXPORT_PREFIX = "xmarks_"
_EXPORT_NAME_RE = re.compile(r"^xmarks_[A-Za-z0-9_-]+\.zip$")

jinja = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)


@dataclass
class ExportResult:
    zip_path: Path
    export_dir: Path
    bookmark_count: int

    @property
    def filename(self) -> str:
        return self.zip_path.name


def slugify(text: str, max_len: int = 50) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return slug[:max_len]


def first_line(text: str | None) -> str:
    return (text or "").split("\n")[0].strip()


def export_bookmarks(db: DB, exports_dir: str | Path, today: date | None = None) -> ExportResult:
    """Write one Markdown file per bookmark plus an index, then zip them.

    Layout: <exports>/xmarks_<date>/{index.md,bookmarks/NNN_<author>_<id>.md}
    and <exports>/xmarks_<date>.zip. An earlier export of the same day
    is replaced.
    """
    exports_dir = Path(exports_dir)
    stamp = (today or date.today()).isoformat()
    export_name = f"{EXPORT_PREFIX}{stamp}"
    export_path = exports_dir / export_name
    bookmarks_path = export_path / "bookmarks"

    if export_path.exists():
        shutil.rmtree(export_path)
    bookmarks_path.mkdir(parents=True, exist_ok=True)

    bookmark_template = jinja.get_template("bookmark.md.j2")
    entries = []
    enriched = db.list_enriched_bookmarks()

    for i, bookmark in enumerate(enriched, start=1):
        author = first_line(bookmark.get("author")) or "Unknown"
        filename = f"{i:03d}_{slugify(author) or 'unknown'}_{sanitize_bookmark_id(bookmark['id'])}.md"
        markdown = bookmark_template.render(bookmark=bookmark, author=author)
        (bookmarks_path / filename).write_text(markdown, encoding="utf-8")
        entries.append(
            {
                "author": author,
                "filename": filename,
                "article_count": len(bookmark["articles"]),
            }
        )

    index = jinja.get_template("index.md.j2").render(date=stamp, entries=entries)
    (export_path / "index.md").write_text(index, encoding="utf-8")

    zip_path = exports_dir / f"{export_name}.zip"
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for path in sorted(export_path.rglob("*")):
            if path.is_file():
                zf.write(path, arcname=str(Path(export_name) / path.relative_to(export_path)))

    logger.info(f"Exported {len(entries)} bookmarks to {zip_path}")
    return ExportResult(zip_path=zip_path, export_dir=export_path, bookmark_count=len(entries))


def resolve_export_file(exports_dir: str | Path, filename: str) -> Path | None:
    """Path of a finished export archive, or None for unknown/unsafe names."""
    if not _EXPORT_NAME_RE.match(filename or ""):
        return None
    path = Path(exports_dir) / filename
    return path if path.is_file() else None
