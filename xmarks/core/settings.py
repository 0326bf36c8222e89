from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class Settings:
    data_dir: str
    db_path: str
    openai_api_key: str = ""
    openai_key_path: str = ""
    yt_dlp_path: str = "yt-dlp"
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    whisper_model: str = "whisper-1"
    log_level: str = "INFO"
    cors_origins: tuple[str, ...] = ("*",)
    host: str = "127.0.0.1"
    port: int = 3000

    @staticmethod
    def from_env() -> "Settings":
        def _s(name: str, default: str) -> str:
            return os.getenv(name, default).strip()

        def _i(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        data_dir = _s("XMARKS_DATA_DIR", "") or os.path.join(os.getcwd(), "data")
        origins = tuple(o.strip() for o in _s("XMARKS_CORS_ORIGINS", "*").split(",") if o.strip())

        return Settings(
            data_dir=data_dir,
            db_path=_s("XMARKS_DB_PATH", "") or os.path.join(data_dir, "bookmarks.db"),
            openai_api_key=_s("OPENAI_API_KEY", ""),
            openai_key_path=_s("XMARKS_OPENAI_KEY_PATH", ""),
            yt_dlp_path=_s("XMARKS_YT_DLP_PATH", "yt-dlp"),
            ffmpeg_path=_s("XMARKS_FFMPEG_PATH", "ffmpeg"),
            ffprobe_path=_s("XMARKS_FFPROBE_PATH", "ffprobe"),
            whisper_model=_s("XMARKS_WHISPER_MODEL", "whisper-1"),
            log_level=_s("XMARKS_LOG_LEVEL", "INFO").upper(),
            cors_origins=origins or ("*",),
            host=_s("XMARKS_HOST", "127.0.0.1"),
            port=_i("XMARKS_PORT", 3000),
        )

    @staticmethod
    def for_data_dir(data_dir: str | Path, **overrides: Any) -> "Settings":
        """Settings rooted at data_dir with everything else at its default."""
        data_dir = str(data_dir)
        return Settings(
            data_dir=data_dir,
            db_path=overrides.pop("db_path", os.path.join(data_dir, "bookmarks.db")),
            **overrides,
        )

    @property
    def media_dir(self) -> Path:
        return Path(self.data_dir) / "media"

    @property
    def articles_dir(self) -> Path:
        return Path(self.data_dir) / "articles"

    @property
    def temp_audio_dir(self) -> Path:
        return Path(self.data_dir) / "temp_audio"

    @property
    def exports_dir(self) -> Path:
        return Path(self.data_dir) / "exports"

    def resolve_openai_key(self) -> str:
        """Return the API key from the environment, falling back to the key file."""
        if self.openai_api_key:
            return self.openai_api_key
        if self.openai_key_path and os.path.isfile(self.openai_key_path):
            with open(self.openai_key_path, encoding="utf-8") as fh:
                return fh.read().strip()
        return ""
