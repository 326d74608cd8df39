import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from yearly_top_songs.config import DEFAULT_DATABASE_URL, env_int, load_local_env_file, load_settings


class ConfigTests(unittest.TestCase):
    def test_load_local_env_file_loads_missing_values_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / ".env"
            env_path.write_text(
                """
# comment
DATABASE_URL="sqlite:///from-file.db"
SYNC_PLAYLIST_DELAY_MS=250
KEEP_ME=from_file
                """.strip(),
                encoding="utf-8",
            )

            with patch.dict(os.environ, {"KEEP_ME": "existing"}):
                os.environ.pop("DATABASE_URL", None)
                os.environ.pop("SYNC_PLAYLIST_DELAY_MS", None)
                load_local_env_file(str(env_path))
                self.assertEqual(os.environ.get("DATABASE_URL"), "sqlite:///from-file.db")
                self.assertEqual(os.environ.get("SYNC_PLAYLIST_DELAY_MS"), "250")
                self.assertEqual(os.environ.get("KEEP_ME"), "existing")

    def test_missing_env_file_is_ignored(self) -> None:
        load_local_env_file("/nonexistent/.env")

    def test_env_int_uses_fallback_for_empty_and_invalid(self) -> None:
        with patch.dict(os.environ, {"TRACK_LIMIT": ""}):
            self.assertEqual(env_int("TRACK_LIMIT", 25), 25)
        with patch.dict(os.environ, {"TRACK_LIMIT": "not-a-number"}):
            self.assertEqual(env_int("TRACK_LIMIT", 25), 25)
        with patch.dict(os.environ, {"TRACK_LIMIT": "10"}):
            self.assertEqual(env_int("TRACK_LIMIT", 25), 10)

    def test_load_settings_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = load_settings()
        self.assertEqual(settings.database_url, DEFAULT_DATABASE_URL)
        self.assertEqual(settings.log_level, "INFO")
        self.assertEqual(settings.sync_playlist_delay_ms, 100)
        self.assertEqual(settings.sync_stale_after_seconds, 900)
        self.assertEqual(settings.cors_origins, ("*",))

    def test_load_settings_from_environment(self) -> None:
        env = {
            "DATABASE_URL": "postgresql://localhost/songs",
            "LOG_LEVEL": "debug",
            "SYNC_PLAYLIST_DELAY_MS": "-5",
            "SYNC_STALE_AFTER_SECONDS": "120",
            "CORS_ORIGINS": "http://localhost:3000, https://example.com,",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = load_settings()
        self.assertEqual(settings.database_url, "postgresql://localhost/songs")
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.sync_playlist_delay_ms, 0)
        self.assertEqual(settings.sync_stale_after_seconds, 120)
        self.assertEqual(settings.cors_origins, ("http://localhost:3000", "https://example.com"))


if __name__ == "__main__":
    unittest.main()
