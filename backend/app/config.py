"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups are env-overridable via the double-underscore
delimiter, e.g.:
    FINANCE__AUTO_SYNC_ON_LOAD=false
    FINANCE__DEFAULT_NOTIFY_BEFORE_DAYS=5
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FinanceConfig(BaseModel):
    """Finance module behaviour.

    Env-overridable via FINANCE__KEY format, e.g.:
        FINANCE__AUTO_SYNC_ON_LOAD=false
        FINANCE__TIMEZONE=America/Sao_Paulo
    """

    # Kick off the bill sync in the background after loading a non-empty list
    auto_sync_on_load: bool = True
    # Days before next_billing_date in which a subscription is flagged as upcoming
    default_notify_before_days: int = Field(default=3, ge=0)
    # "Today" for due dates and invoice closing is taken in this zone
    timezone: str = "America/Sao_Paulo"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_publishable_key: str = ""
    supabase_secret_key: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    finance: FinanceConfig = Field(default_factory=FinanceConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
