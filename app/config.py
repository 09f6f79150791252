"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Sannsvar", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=7000, alias="PORT")

    trakt_client_id: str | None = Field(default=None, alias="TRAKT_CLIENT_ID")
    trakt_history_limit: int = Field(
        default=50, alias="TRAKT_HISTORY_LIMIT", ge=1, le=1_000
    )

    openrouter_api_key: str | None = Field(
        default=None, alias="OPENROUTER_API_KEY"
    )
    openrouter_model: str = Field(
        default="deepseek/deepseek-r1", alias="OPENROUTER_MODEL"
    )
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-2.5-flash", alias="GEMINI_MODEL")
    generation_timeout_seconds: float = Field(
        default=90.0, alias="GENERATION_TIMEOUT", gt=0, le=600
    )

    history_ttl_seconds: int = Field(
        default=3_600, alias="HISTORY_TTL", ge=60
    )
    recommendation_ttl_seconds: int = Field(
        default=14_400, alias="RECOMMENDATION_TTL", ge=60
    )

    page_size: int = Field(default=15, alias="PAGE_SIZE", ge=1, le=100)
    first_batch_size: int = Field(
        default=15, alias="FIRST_BATCH_SIZE", ge=1, le=200
    )
    second_batch_size: int = Field(
        default=45, alias="SECOND_BATCH_SIZE", ge=1, le=200
    )
    batch_size: int = Field(default=100, alias="BATCH_SIZE", ge=1, le=200)
    prefetch_threshold: int = Field(
        default=30, alias="PREFETCH_THRESHOLD", ge=0, le=500
    )
    chained_fill_ratio: float = Field(
        default=0.8, alias="CHAINED_FILL_RATIO", ge=0.0, le=1.0
    )
    similar_count: int = Field(default=10, alias="SIMILAR_COUNT", ge=1, le=50)
    cleanup_interval_seconds: int = Field(
        default=3_600, alias="CLEANUP_INTERVAL", ge=60
    )

    trakt_api_url: HttpUrl = Field(
        default="https://api.trakt.tv", alias="TRAKT_API_URL"
    )
    openrouter_api_url: HttpUrl = Field(
        default="https://openrouter.ai/api/v1", alias="OPENROUTER_API_URL"
    )
    openai_api_url: HttpUrl = Field(
        default="https://api.openai.com/v1", alias="OPENAI_API_URL"
    )
    gemini_api_url: HttpUrl = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        alias="GEMINI_API_URL",
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./sannsvar.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @model_validator(mode="after")
    def _check_batch_tiers(self) -> "Settings":
        """Batch tiers must grow so deep pagination needs fewer calls."""

        if not (self.first_batch_size < self.second_batch_size < self.batch_size):
            raise ValueError(
                "FIRST_BATCH_SIZE < SECOND_BATCH_SIZE < BATCH_SIZE must hold"
            )
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
