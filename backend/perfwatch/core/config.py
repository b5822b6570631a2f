import logging
import os
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


def _get_version() -> str:
    """Read version from pyproject.toml or environment variable."""
    if env_version := os.getenv("PERFWATCH_VERSION"):
        return env_version

    try:
        pyproject_path = Path(__file__).parent.parent.parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            content = pyproject_path.read_text()
            for line in content.split("\n"):
                if line.startswith("version"):
                    # Parse: version = "0.1.0"
                    return line.split("=")[1].strip().strip('"').strip("'")
    except OSError:
        pass

    return "0.0.0-dev"


# Application version - read from env var, pyproject.toml, or default to dev
APP_VERSION = _get_version()


class Settings(BaseSettings):
    # App
    APP_NAME: str = "perfwatch"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Storage
    DATA_DIR: str = "./data"
    DATABASE_FILE: str = "perfwatch.db"
    ARCHIVE_DIR: str | None = None

    @property
    def DATABASE_PATH(self) -> Path:
        return Path(self.DATA_DIR) / self.DATABASE_FILE

    @property
    def DATABASE_URL(self) -> str:
        return f"sqlite+aiosqlite:///{self.DATABASE_PATH}"

    @property
    def ARCHIVE_PATH(self) -> Path:
        if self.ARCHIVE_DIR:
            return Path(self.ARCHIVE_DIR)
        return Path(self.DATA_DIR) / "archive"

    # Alembic script directory (env.py and versions/)
    ALEMBIC_DIR: str | None = None

    @property
    def ALEMBIC_SCRIPT_LOCATION(self) -> Path:
        if self.ALEMBIC_DIR:
            return Path(self.ALEMBIC_DIR)
        return Path(__file__).resolve().parent.parent.parent / "alembic"

    # Collector adapter factory, as "module:attribute"
    COLLECTOR_ADAPTER: str = "perfwatch.collectors.simulated:SimulatedAdapter"

    # Notifications
    NOTIFY_WEBHOOK_URL: str | None = None
    NOTIFY_WEBHOOK_HEADER_NAME: str | None = None
    NOTIFY_WEBHOOK_HEADER_VALUE: str | None = None
    NOTIFY_TIMEOUT_SECONDS: float = 10.0
    NOTIFY_RETRY_DELAY_SECONDS: float = 5.0

    # API
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8080

    # Seeds for the runtime monitor config on first start.
    # Once persisted, the operator-edited values win.
    DEFAULT_TICK_SECONDS: int = 30
    DEFAULT_MAX_CONCURRENCY: int = 7
    DEFAULT_RUN_TIMEOUT_SECONDS: int = 30

    # Archive batch size (rows per export file and delete transaction)
    ARCHIVE_BATCH_SIZE: int = 50000

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"LOG_LEVEL must be a standard logging level name, got '{v}'")
        return level

    @field_validator("DEFAULT_TICK_SECONDS", "DEFAULT_MAX_CONCURRENCY", "DEFAULT_RUN_TIMEOUT_SECONDS")
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
