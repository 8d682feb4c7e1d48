# backend/coinledger/settings.py
from __future__ import annotations

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Service configuration, environment-driven with prefix COINLEDGER_ (case-insensitive).
    Runtime feature flags are not here; they live in the admin_settings table.
    """

    database_url: str = "sqlite:///./coinledger.db"
    session_secret: str = "change-me"
    admin_username: str = "admin"
    admin_password: str = "admin"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    # Analytics are expensive to rebuild and not authoritative.
    analytics_cache_seconds: int = Field(default=30 * 60, ge=0)

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(
        env_prefix="COINLEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
