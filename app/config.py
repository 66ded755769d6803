"""Application configuration models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils import parse_duration


@dataclass(frozen=True, slots=True)
class QueueLimits:
    """Concurrency and throughput ceilings for one upstream request queue."""

    max_concurrent: int
    max_requests: int
    period_seconds: float


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Trakt Lists", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=7000, alias="PORT")
    base_url: HttpUrl = Field(default="http://localhost:7000", alias="BASE_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    trakt_client_id: str | None = Field(default=None, alias="TRAKT_CLIENT_ID")
    trakt_client_secret: str | None = Field(
        default=None, alias="TRAKT_CLIENT_SECRET"
    )
    trakt_api_url: HttpUrl = Field(
        default="https://api.trakt.tv", alias="TRAKT_API_URL"
    )
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    fanart_api_url: HttpUrl = Field(
        default="https://webservice.fanart.tv/v3", alias="FANART_API_URL"
    )
    rpdb_api_url: HttpUrl = Field(
        default="https://api.ratingposterdb.com", alias="RPDB_API_URL"
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./traktlists.db", alias="DATABASE_URL"
    )
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    cache_recovery_seconds: float = Field(
        default=30.0, alias="CACHE_RECOVERY_SECONDS", ge=0
    )

    tmdb_cache_duration: str = Field(default="1d", alias="TMDB_CACHE_DURATION")
    trakt_cache_duration: str = Field(default="1d", alias="TRAKT_CACHE_DURATION")
    trakt_history_fetch_interval: str = Field(
        default="24h", alias="TRAKT_HISTORY_FETCH_INTERVAL"
    )

    catalog_page_size: int = Field(
        default=20, alias="CATALOG_PAGE_SIZE", ge=1, le=100
    )
    watched_marker: str = Field(default="✔️", alias="WATCHED_MARKER")

    trakt_get_max_concurrent: int = Field(
        default=10, alias="TRAKT_GET_MAX_CONCURRENT", ge=1
    )
    trakt_get_max_requests: int = Field(
        default=1_000, alias="TRAKT_GET_MAX_REQUESTS", ge=1
    )
    trakt_get_period_seconds: float = Field(
        default=300.0, alias="TRAKT_GET_PERIOD_SECONDS", gt=0
    )
    trakt_post_max_concurrent: int = Field(
        default=1, alias="TRAKT_POST_MAX_CONCURRENT", ge=1
    )
    trakt_post_max_requests: int = Field(
        default=1, alias="TRAKT_POST_MAX_REQUESTS", ge=1
    )
    trakt_post_period_seconds: float = Field(
        default=1.0, alias="TRAKT_POST_PERIOD_SECONDS", gt=0
    )
    tmdb_max_concurrent: int = Field(default=20, alias="TMDB_MAX_CONCURRENT", ge=1)
    tmdb_max_requests: int = Field(default=40, alias="TMDB_MAX_REQUESTS", ge=1)
    tmdb_period_seconds: float = Field(
        default=10.0, alias="TMDB_PERIOD_SECONDS", gt=0
    )
    fanart_max_concurrent: int = Field(default=5, alias="FANART_MAX_CONCURRENT", ge=1)
    fanart_max_requests: int = Field(default=10, alias="FANART_MAX_REQUESTS", ge=1)
    fanart_period_seconds: float = Field(
        default=1.0, alias="FANART_PERIOD_SECONDS", gt=0
    )
    rpdb_max_concurrent: int = Field(default=5, alias="RPDB_MAX_CONCURRENT", ge=1)
    rpdb_max_requests: int = Field(default=10, alias="RPDB_MAX_REQUESTS", ge=1)
    rpdb_period_seconds: float = Field(
        default=1.0, alias="RPDB_PERIOD_SECONDS", gt=0
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator(
        "tmdb_cache_duration",
        "trakt_cache_duration",
        "trakt_history_fetch_interval",
        mode="after",
    )
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        """Reject malformed ``<n>d``/``<n>h`` strings when settings load."""

        parse_duration(value)
        return value.strip()

    @property
    def tmdb_cache_seconds(self) -> int:
        return parse_duration(self.tmdb_cache_duration)

    @property
    def trakt_cache_seconds(self) -> int:
        return parse_duration(self.trakt_cache_duration)

    @property
    def history_fetch_interval(self) -> timedelta:
        return timedelta(seconds=parse_duration(self.trakt_history_fetch_interval))

    @property
    def oauth_redirect_uri(self) -> str:
        """Return the callback URL registered with the Trakt application."""

        return f"{str(self.base_url).rstrip('/')}/callback"

    def queue_limits(self, name: str) -> QueueLimits:
        """Return the ceilings configured for a named upstream queue."""

        return QueueLimits(
            max_concurrent=getattr(self, f"{name}_max_concurrent"),
            max_requests=getattr(self, f"{name}_max_requests"),
            period_seconds=getattr(self, f"{name}_period_seconds"),
        )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
