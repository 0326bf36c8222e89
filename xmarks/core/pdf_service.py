"""Storage and text extraction for PDFs attached to bookmarks."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path

from pypdf import PdfReader

from xmarks.core.storage import sanitize_bookmark_id


@dataclass(frozen=True)
class SavedPdf:
    relative_path: str  # relative to the data dir, e.g. articles/<id>/article_1.pdf
    full_path: Path
    url_path: str  # <id>/article_1.pdf, served under /articles


def save_pdf_for_bookmark(articles_dir: str | Path, bookmark_id: str, data: bytes) -> SavedPdf:
    """Write data to <articles_dir>/<sanitized id>/article_<ms>.pdf."""
    safe_id = sanitize_bookmark_id(bookmark_id)
    directory = Path(articles_dir) / safe_id
    directory.mkdir(parents=True, exist_ok=True)

    filename = f"article_{int(time.time() * 1000)}.pdf"
    full_path = directory / filename
    full_path.write_bytes(data)

    return SavedPdf(
        relative_path=f"{Path(articles_dir).name}/{safe_id}/{filename}",
        full_path=full_path,
        url_path=f"{safe_id}/{filename}",
    )


def extract_text_from_pdf(pdf_path: str | Path) -> str:
    """Concatenated text of every page; empty for image-only PDFs.

    Raises:
        FileNotFoundError: If pdf_path does not exist.
    """
    path = Path(pdf_path)
    if not path.is_file():
        raise FileNotFoundError(f"PDF not found: {path}")

    reader = PdfReader(str(path))
    parts = []
    for page in reader.pages:
        text = page.extract_text()
        if text:
            parts.append(text)
    return "\n".join(parts).strip()
