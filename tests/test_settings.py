"""Tests for settings.py"""

from pathlib import Path

from xmarks.core.settings import Settings


class TestFromEnv:
    def test_defaults(self, monkeypatch, tmp_path):
        for name in (
            "XMARKS_DB_PATH", "OPENAI_API_KEY", "XMARKS_OPENAI_KEY_PATH", "XMARKS_YT_DLP_PATH",
            "XMARKS_LOG_LEVEL", "XMARKS_CORS_ORIGINS", "XMARKS_PORT",
        ):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("XMARKS_DATA_DIR", str(tmp_path))

        s = Settings.from_env()

        assert s.data_dir == str(tmp_path)
        assert s.db_path == str(tmp_path / "bookmarks.db")
        assert s.yt_dlp_path == "yt-dlp"
        assert s.log_level == "INFO"
        assert s.cors_origins == ("*",)
        assert s.port == 3000

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("XMARKS_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("XMARKS_DB_PATH", "/tmp/other.db")
        monkeypatch.setenv("XMARKS_CORS_ORIGINS", "https://x.com, https://twitter.com")
        monkeypatch.setenv("XMARKS_LOG_LEVEL", "debug")
        monkeypatch.setenv("XMARKS_PORT", "not-a-number")

        s = Settings.from_env()

        assert s.db_path == "/tmp/other.db"
        assert s.cors_origins == ("https://x.com", "https://twitter.com")
        assert s.log_level == "DEBUG"
        assert s.port == 3000


class TestDerivedPaths:
    def test_directories(self, tmp_path):
        s = Settings.for_data_dir(tmp_path)
        assert s.media_dir == Path(tmp_path) / "media"
        assert s.articles_dir == Path(tmp_path) / "articles"
        assert s.temp_audio_dir == Path(tmp_path) / "temp_audio"
        assert s.exports_dir == Path(tmp_path) / "exports"


class TestOpenAIKey:
    def test_env_value_wins(self, tmp_path):
        key_file = tmp_path / "key"
        key_file.write_text("from-file")
        s = Settings.for_data_dir(tmp_path, openai_api_key="from-env", openai_key_path=str(key_file))
        assert s.resolve_openai_key() == "from-env"

    def test_key_file_fallback(self, tmp_path):
        key_file = tmp_path / "key"
        key_file.write_text("  from-file\n")
        s = Settings.for_data_dir(tmp_path, openai_key_path=str(key_file))
        assert s.resolve_openai_key() == "from-file"

    def test_no_key(self, tmp_path):
        s = Settings.for_data_dir(tmp_path, openai_key_path=str(tmp_path / "missing"))
        assert s.resolve_openai_key() == ""
