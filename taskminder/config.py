"""Application configuration."""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_path: Path = Field(default=Path("taskminder.db"), alias="TASKMINDER_DATABASE_PATH")
    # Calendar dates ("today") are taken in this zone.
    timezone: str = Field(default="Asia/Tokyo", alias="TASKMINDER_TIMEZONE")
    poll_interval_seconds: float = Field(default=3600.0, alias="TASKMINDER_POLL_INTERVAL_SECONDS")
    log_level: str = Field(default="INFO", alias="TASKMINDER_LOG_LEVEL")

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def today_in(settings: Settings) -> date:
    """Current calendar date in the configured timezone."""

    return datetime.now(ZoneInfo(settings.timezone)).date()
