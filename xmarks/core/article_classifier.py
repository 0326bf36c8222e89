"""Cheap URL heuristics deciding whether a link is worth article extraction.

Allow-by-default: anything that is not a known social, video or media-CDN
host and does not point straight at a media file is treated as a
candidate. Pages that are not really articles fail later, in extraction.
"""

from __future__ import annotations

from urllib.parse import urlparse

# Social networks, short-video sites and media CDNs
SKIP_HOSTS = {
    "x.com",
    "twitter.com",
    "pic.twitter.com",
    "youtube.com",
    "youtu.be",
    "tiktok.com",
    "instagram.com",
    "facebook.com",
    "pbs.twimg.com",
    "video.twimg.com",
    "giphy.com",
    "imgur.com",
}

MEDIA_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".mp4", ".webm", ".svg")


def _host_matches(host: str, candidates: set[str]) -> bool:
    return any(host == h or host.endswith("." + h) for h in candidates)


def is_likely_article(url: str) -> bool:
    """Return True if url may point at a readable article."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False

    host = (parsed.hostname or "").lower()
    if not host:
        return False
    if host.startswith("www."):
        host = host[4:]

    if _host_matches(host, SKIP_HOSTS):
        return False

    if parsed.path.lower().endswith(MEDIA_EXTENSIONS):
        return False

    return True
