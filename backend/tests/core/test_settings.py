"""Tests for process settings."""

from pathlib import Path

import pytest
from pydantic_core import ValidationError

from perfwatch.core.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        """Defaults point at a SQLite file under ./data and the simulated adapter."""
        for name in ("DATA_DIR", "DATABASE_FILE", "ARCHIVE_DIR", "COLLECTOR_ADAPTER"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings(_env_file=None)

        assert settings.DATABASE_PATH == Path("./data") / "perfwatch.db"
        assert settings.DATABASE_URL.startswith("sqlite+aiosqlite:///")
        assert settings.ARCHIVE_PATH == Path("./data") / "archive"
        assert settings.COLLECTOR_ADAPTER == "perfwatch.collectors.simulated:SimulatedAdapter"
        assert settings.DEFAULT_MAX_CONCURRENCY == 7

    def test_env_overrides(self, monkeypatch, tmp_path):
        """Environment variables override defaults."""
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("ARCHIVE_DIR", str(tmp_path / "cold"))
        monkeypatch.setenv("DEFAULT_TICK_SECONDS", "10")
        settings = Settings(_env_file=None)

        assert settings.DATABASE_PATH == tmp_path / "perfwatch.db"
        assert settings.ARCHIVE_PATH == tmp_path / "cold"
        assert settings.DEFAULT_TICK_SECONDS == 10

    def test_log_level_is_normalized(self):
        assert Settings(_env_file=None, LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"

    def test_rejects_unknown_log_level(self):
        with pytest.raises(ValidationError, match="LOG_LEVEL"):
            Settings(_env_file=None, LOG_LEVEL="chatty")

    @pytest.mark.parametrize("field", ["DEFAULT_TICK_SECONDS", "DEFAULT_MAX_CONCURRENCY", "DEFAULT_RUN_TIMEOUT_SECONDS"])
    def test_rejects_non_positive_scheduler_seeds(self, field):
        with pytest.raises(ValidationError, match=field):
            Settings(_env_file=None, **{field: 0})
