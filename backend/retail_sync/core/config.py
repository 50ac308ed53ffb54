"""
Central application settings.

Values come from environment variables or a local ``.env`` file.
"""
from __future__ import annotations

import json
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent / "db" / "retail_sync.db"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    APP_NAME: str = Field(default="Retail Sync")
    APP_VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=False)

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # Local embedded store
    DATABASE_PATH: str = Field(default=str(_DEFAULT_DB_PATH))

    # Logging (empty LOG_FILE disables the file sink)
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE: str = Field(default="logs/retail_sync.log")

    CORS_ORIGINS: str = Field(default="*")

    # Remote API paging / retry
    REMOTE_PAGE_SIZE: int = Field(default=500)
    REMOTE_PAGE_DELAY_S: float = Field(default=0.1)
    REMOTE_MAX_RETRIES: int = Field(default=3)
    REMOTE_RETRY_DELAY_S: float = Field(default=2.0)
    REMOTE_TIMEOUT_S: float = Field(default=30.0)

    # Import jobs
    JOB_EVICTION_DELAY_S: float = Field(default=5.0)
    JOB_CANCEL_EVICTION_DELAY_S: float = Field(default=1.0)
    SUBSCRIBER_QUEUE_SIZE: int = Field(default=1000)

    # Legacy SQL server (empty LEGACY_DB_NAME disables it)
    LEGACY_DB_HOST: str = Field(default="localhost")
    LEGACY_DB_PORT: int = Field(default=5432)
    LEGACY_DB_NAME: str = Field(default="")
    LEGACY_DB_USER: str = Field(default="postgres")
    LEGACY_DB_PASSWORD: str = Field(default="")
    LEGACY_DB_SSLMODE: str = Field(default="disable")
    LEGACY_DB_SCHEMA: str = Field(default="public")


def get_cors_origins(cors_string: str) -> list[str]:
    """Accepts "*", a JSON list, or a comma separated list."""
    if cors_string == "*":
        return ["*"]
    try:
        parsed = json.loads(cors_string)
    except json.JSONDecodeError:
        return [origin.strip() for origin in cors_string.split(",") if origin.strip()]
    if isinstance(parsed, list):
        return [str(o) for o in parsed]
    return [str(parsed)]


settings = Settings()
