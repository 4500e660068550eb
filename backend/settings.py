# backend/settings.py
from functools import lru_cache
from typing import Annotated, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from the environment or a local .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    log_level: str = "INFO"
    # Comma separated in the environment, e.g. CORS_ALLOW_ORIGINS=https://a.example,https://b.example
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])
    # Users allowed to run maintenance routes such as the request cleanup
    admin_user_ids: Annotated[list[str], NoDecode] = Field(default_factory=list)

    # Settlement guards
    trade_max_value_diff: float = Field(default=0.25, ge=0, le=1)
    settlement_max_attempts: int = Field(default=3, ge=1)
    trade_cas_max_retries: int = Field(default=5, ge=1)
    # A claimed settlement older than this may be resumed by either party
    settlement_stale_after_seconds: int = Field(default=60, ge=0)

    # Finished requests older than this are purged by the cleanup endpoint
    request_retention_days: int = Field(default=2, ge=0)

    @field_validator("cors_allow_origins", "admin_user_ids", mode="before")
    @classmethod
    def split_comma_list(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@lru_cache()
def get_settings() -> Settings:
    return Settings()
