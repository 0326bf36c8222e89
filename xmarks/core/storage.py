from __future__ import annotations

import logging
import os
import re
import sqlite3
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Iterator

if TYPE_CHECKING:
    from xmarks.core.article_extractor import CandidateLink, ExtractedArticle

logger = logging.getLogger(__name__)

# Site name given to articles manufactured from the post's own text
SYNTHETIC_SITE_NAME = "X"


def sanitize_bookmark_id(bookmark_id: str | None) -> str:
    """Make a bookmark id safe to use as a single path segment.

    - Anything but alphanumerics, underscore and hyphen becomes "_"
    - Truncated to 200 characters
    - "unknown" when nothing is left
    """
    safe = re.sub(r"[^a-zA-Z0-9_-]", "_", bookmark_id or "")[:200]
    return safe or "unknown"


def _casefold(value: Any) -> Any:
    """Unicode-aware lowering for search; SQLite LIKE only folds ASCII."""
    return value.casefold() if isinstance(value, str) else value


def _like_pattern(q: str) -> str:
    escaped = q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS bookmarks (
  id TEXT PRIMARY KEY,
  url TEXT,
  author TEXT,
  text TEXT,
  tags TEXT DEFAULT NULL,
  saved_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS media (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  bookmark_id TEXT NOT NULL REFERENCES bookmarks(id) ON DELETE CASCADE,
  url TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS links (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  bookmark_id TEXT NOT NULL REFERENCES bookmarks(id) ON DELETE CASCADE,
  original_url TEXT,
  resolved_url TEXT,
  is_article INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS articles (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  bookmark_id TEXT NOT NULL REFERENCES bookmarks(id) ON DELETE CASCADE,
  url TEXT,
  title TEXT,
  author TEXT,
  content TEXT,
  content_md TEXT NOT NULL,
  excerpt TEXT,
  site_name TEXT,
  extracted_at DATETIME DEFAULT CURRENT_TIMESTAMP,
  pdf_path TEXT
);

CREATE TABLE IF NOT EXISTS transcripts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  bookmark_id TEXT NOT NULL REFERENCES bookmarks(id) ON DELETE CASCADE,
  video_url TEXT NOT NULL,
  transcript TEXT,
  transcribed_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_media_bookmark_id ON media(bookmark_id);
CREATE INDEX IF NOT EXISTS idx_links_bookmark_id ON links(bookmark_id);
CREATE INDEX IF NOT EXISTS idx_articles_bookmark_id ON articles(bookmark_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_transcripts_bookmark_video ON transcripts(bookmark_id, video_url);
"""


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _run_migrations(conn: sqlite3.Connection) -> None:
    """Add columns that older databases were created without."""
    if "tags" not in _columns(conn, "bookmarks"):
        logger.info("Migration: adding bookmarks.tags")
        conn.execute("ALTER TABLE bookmarks ADD COLUMN tags TEXT DEFAULT NULL")
    if "pdf_path" not in _columns(conn, "articles"):
        logger.info("Migration: adding articles.pdf_path")
        conn.execute("ALTER TABLE articles ADD COLUMN pdf_path TEXT")
    conn.commit()


def _article_view(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "url": row["url"] or "",
        "title": row["title"],
        "author": row["author"],
        "excerpt": row["excerpt"],
        "site_name": row["site_name"],
        "content_md": row["content_md"],
        "extracted_at": row["extracted_at"],
        "pdf_path": row["pdf_path"],
    }


@dataclass
class DB:
    conn: sqlite3.Connection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def init(self) -> None:
        self.conn.row_factory = sqlite3.Row
        self.conn.create_function("casefold", 1, _casefold, deterministic=True)
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()
        _run_migrations(self.conn)

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        """One transaction: commit on success, roll back on error."""
        with self._lock, self.conn:
            yield self.conn

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()

    def _scalar(self, sql: str, params: Iterable[Any] = ()) -> Any:
        with self._lock:
            row = self.conn.execute(sql, tuple(params)).fetchone()
        return row[0] if row else None

    # ── Bookmarks ────────────────────────────────────────────

    def upsert_bookmark(
        self,
        bookmark_id: str,
        url: str | None,
        author: str | None,
        text: str | None,
        tags: list[str] | None = None,
    ) -> bool:
        """Insert a bookmark or merge a re-sync into the existing row.

        url is always replaced. text and author are only replaced by
        non-empty values so a partial re-scrape never blanks richer data.
        tags are only replaced when a non-empty list is given.

        Returns True if the bookmark was newly created.
        """
        tags_value = ",".join(t.strip() for t in tags if t.strip()) if tags else None
        with self._tx() as conn:
            existed = conn.execute(
                "SELECT 1 FROM bookmarks WHERE id = ?", (bookmark_id,)
            ).fetchone() is not None
            conn.execute(
                """
                INSERT INTO bookmarks (id, url, author, text, tags) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    url = excluded.url,
                    text = CASE WHEN COALESCE(excluded.text, '') != '' THEN excluded.text ELSE bookmarks.text END,
                    author = CASE WHEN COALESCE(excluded.author, '') != '' THEN excluded.author ELSE bookmarks.author END,
                    tags = COALESCE(NULLIF(excluded.tags, ''), bookmarks.tags)
                """,
                (bookmark_id, url or "", author or "", text or "", tags_value),
            )
        return not existed

    def get_bookmark(self, bookmark_id: str) -> dict[str, Any] | None:
        rows = self._query("SELECT * FROM bookmarks WHERE id = ?", (bookmark_id,))
        return dict(rows[0]) if rows else None

    def list_bookmarks(self) -> list[dict[str, Any]]:
        """All bookmarks, most recently saved first."""
        rows = self._query("SELECT * FROM bookmarks ORDER BY saved_at DESC, rowid DESC")
        return [dict(r) for r in rows]

    def search_bookmarks(self, q: str) -> list[dict[str, Any]]:
        """Case-insensitive substring search over bookmarks and their articles.

        Matches bookmark text, author and tags plus article title and
        Markdown content. An empty query matches nothing.
        """
        q = (q or "").strip()
        if not q:
            return []
        p = _like_pattern(q.casefold())
        rows = self._query(
            """
            SELECT * FROM bookmarks
            WHERE id IN (
                SELECT b.id FROM bookmarks b
                LEFT JOIN articles a ON a.bookmark_id = b.id
                WHERE casefold(b.text) LIKE ? ESCAPE '\\'
                   OR casefold(b.author) LIKE ? ESCAPE '\\'
                   OR casefold(b.tags) LIKE ? ESCAPE '\\'
                   OR casefold(a.title) LIKE ? ESCAPE '\\'
                   OR casefold(a.content_md) LIKE ? ESCAPE '\\'
            )
            ORDER BY saved_at DESC, rowid DESC
            """,
            (p, p, p, p, p),
        )
        return [dict(r) for r in rows]

    def get_stats(self) -> dict[str, Any]:
        return {
            "totalBookmarks": self._scalar("SELECT COUNT(*) FROM bookmarks"),
            "totalArticles": self._scalar("SELECT COUNT(*) FROM articles"),
            "lastSynced": self._scalar(
                "SELECT saved_at FROM bookmarks ORDER BY saved_at DESC, rowid DESC LIMIT 1"
            ),
        }

    def delete_bookmark(self, bookmark_id: str) -> bool:
        """Delete a bookmark and every child row. Returns True if it existed."""
        with self._tx() as conn:
            conn.execute("DELETE FROM transcripts WHERE bookmark_id = ?", (bookmark_id,))
            conn.execute("DELETE FROM articles WHERE bookmark_id = ?", (bookmark_id,))
            conn.execute("DELETE FROM links WHERE bookmark_id = ?", (bookmark_id,))
            conn.execute("DELETE FROM media WHERE bookmark_id = ?", (bookmark_id,))
            cur = conn.execute("DELETE FROM bookmarks WHERE id = ?", (bookmark_id,))
            return cur.rowcount > 0

    def delete_all_bookmarks(self) -> int:
        """Empty every table. Returns the number of bookmarks removed."""
        with self._tx() as conn:
            conn.execute("DELETE FROM transcripts")
            conn.execute("DELETE FROM articles")
            conn.execute("DELETE FROM links")
            conn.execute("DELETE FROM media")
            cur = conn.execute("DELETE FROM bookmarks")
            return cur.rowcount

    # ── Media ────────────────────────────────────────────────

    def count_media(self, bookmark_id: str) -> int:
        return self._scalar("SELECT COUNT(*) FROM media WHERE bookmark_id = ?", (bookmark_id,))

    def get_media_urls(self, bookmark_id: str) -> list[str]:
        rows = self._query("SELECT url FROM media WHERE bookmark_id = ? ORDER BY id", (bookmark_id,))
        return [r["url"] for r in rows]

    def insert_media(self, bookmark_id: str, url: str) -> None:
        with self._tx() as conn:
            conn.execute("INSERT INTO media (bookmark_id, url) VALUES (?, ?)", (bookmark_id, url))

    def replace_media(self, bookmark_id: str, urls: list[str]) -> None:
        """Swap the whole media set of a bookmark in one transaction."""
        with self._tx() as conn:
            conn.execute("DELETE FROM media WHERE bookmark_id = ?", (bookmark_id,))
            conn.executemany(
                "INSERT INTO media (bookmark_id, url) VALUES (?, ?)",
                [(bookmark_id, u) for u in urls],
            )

    def delete_media_for_bookmark(self, bookmark_id: str) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM media WHERE bookmark_id = ?", (bookmark_id,))

    # ── Links & articles ─────────────────────────────────────

    def count_articles(self, bookmark_id: str) -> int:
        return self._scalar("SELECT COUNT(*) FROM articles WHERE bookmark_id = ?", (bookmark_id,))

    def count_linked_articles(self, bookmark_id: str) -> int:
        """Articles that were extracted from a URL."""
        return self._scalar(
            "SELECT COUNT(*) FROM articles WHERE bookmark_id = ? AND COALESCE(url, '') != ''",
            (bookmark_id,),
        )

    def get_links(self, bookmark_id: str) -> list[dict[str, Any]]:
        rows = self._query(
            "SELECT original_url, resolved_url, is_article FROM links WHERE bookmark_id = ? ORDER BY id",
            (bookmark_id,),
        )
        return [
            {
                "original_url": r["original_url"],
                "resolved_url": r["resolved_url"],
                "is_article": bool(r["is_article"]),
            }
            for r in rows
        ]

    def get_articles(self, bookmark_id: str) -> list[dict[str, Any]]:
        rows = self._query("SELECT * FROM articles WHERE bookmark_id = ? ORDER BY id", (bookmark_id,))
        return [_article_view(r) for r in rows]

    def get_synthetic_article_length(self, bookmark_id: str) -> int | None:
        """Length of the stored synthetic article's Markdown, None if there is none."""
        return self._scalar(
            """
            SELECT LENGTH(COALESCE(content_md, ''))
            FROM articles
            WHERE bookmark_id = ? AND site_name = ? AND COALESCE(url, '') = ''
            ORDER BY id DESC
            LIMIT 1
            """,
            (bookmark_id, SYNTHETIC_SITE_NAME),
        )

    def _insert_article(self, conn: sqlite3.Connection, bookmark_id: str, article: "ExtractedArticle") -> int:
        if not (article.content_md or "").strip():
            raise ValueError("Article content_md must not be empty")
        cur = conn.execute(
            """
            INSERT INTO articles (bookmark_id, url, title, author, content, content_md, excerpt, site_name, pdf_path)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                bookmark_id,
                article.url or "",
                article.title,
                article.author,
                article.content,
                article.content_md,
                article.excerpt,
                article.site_name,
                article.pdf_path,
            ),
        )
        return cur.lastrowid

    def replace_links_and_articles(
        self,
        bookmark_id: str,
        links: list["CandidateLink"],
        articles: list["ExtractedArticle"],
    ) -> None:
        """Replace the link and article sets of a bookmark atomically.

        Readers never observe the window between delete and re-insert.
        """
        with self._tx() as conn:
            conn.execute("DELETE FROM links WHERE bookmark_id = ?", (bookmark_id,))
            conn.execute("DELETE FROM articles WHERE bookmark_id = ?", (bookmark_id,))
            conn.executemany(
                "INSERT INTO links (bookmark_id, original_url, resolved_url, is_article) VALUES (?, ?, ?, ?)",
                [(bookmark_id, l.original_url, l.resolved_url, 1 if l.is_article else 0) for l in links],
            )
            for article in articles:
                self._insert_article(conn, bookmark_id, article)

    def replace_synthetic_article(self, bookmark_id: str, article: "ExtractedArticle") -> int:
        """Swap the synthetic article of a bookmark, leaving other articles alone."""
        with self._tx() as conn:
            conn.execute(
                "DELETE FROM articles WHERE bookmark_id = ? AND site_name = ? AND COALESCE(url, '') = ''",
                (bookmark_id, SYNTHETIC_SITE_NAME),
            )
            return self._insert_article(conn, bookmark_id, article)

    def add_article(self, bookmark_id: str, article: "ExtractedArticle") -> int:
        """Append one article (manual attach). Returns the new article id."""
        with self._tx() as conn:
            return self._insert_article(conn, bookmark_id, article)

    def delete_article(self, article_id: int) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM articles WHERE id = ?", (article_id,))
            return cur.rowcount > 0

    # ── Transcripts ──────────────────────────────────────────

    def get_transcript(self, bookmark_id: str, video_url: str) -> dict[str, Any] | None:
        rows = self._query(
            "SELECT * FROM transcripts WHERE bookmark_id = ? AND video_url = ?",
            (bookmark_id, video_url),
        )
        return dict(rows[0]) if rows else None

    def upsert_transcript(self, bookmark_id: str, video_url: str, transcript: str) -> None:
        """Store a transcript; re-transcribing the same video updates it in place."""
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO transcripts (bookmark_id, video_url, transcript) VALUES (?, ?, ?)
                ON CONFLICT(bookmark_id, video_url) DO UPDATE SET
                    transcript = excluded.transcript,
                    transcribed_at = CURRENT_TIMESTAMP
                """,
                (bookmark_id, video_url, transcript),
            )

    # ── Read side ────────────────────────────────────────────

    def enrich_bookmarks(self, bookmarks: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Attach media, articles and transcripts to each bookmark.

        Each child table is read once and grouped by bookmark id, so the
        cost does not grow with the number of bookmarks queried.
        """
        media_map: dict[str, list[str]] = defaultdict(list)
        for r in self._query("SELECT bookmark_id, url FROM media ORDER BY id"):
            media_map[r["bookmark_id"]].append(r["url"])

        article_map: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for r in self._query("SELECT * FROM articles ORDER BY id"):
            article_map[r["bookmark_id"]].append(_article_view(r))

        transcript_map: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for r in self._query("SELECT bookmark_id, video_url, transcript, transcribed_at FROM transcripts ORDER BY id"):
            transcript_map[r["bookmark_id"]].append(
                {
                    "video_url": r["video_url"],
                    "transcript": r["transcript"],
                    "transcribed_at": r["transcribed_at"],
                }
            )

        return [
            {
                **b,
                "media": media_map.get(b["id"], []),
                "articles": article_map.get(b["id"], []),
                "transcripts": transcript_map.get(b["id"], []),
            }
            for b in bookmarks
        ]

    def list_enriched_bookmarks(self) -> list[dict[str, Any]]:
        return self.enrich_bookmarks(self.list_bookmarks())


def connect(db_path: str) -> DB:
    """Open (creating if needed) the database at db_path."""
    if db_path != ":memory:":
        parent = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(parent, exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    db = DB(conn=conn)
    db.init()
    return db
