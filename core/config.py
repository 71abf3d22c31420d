from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import AnyHttpUrl, Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SETTINGS__",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_origins: List[AnyHttpUrl] = Field(default_factory=list)

    valkey_host: str = Field(default="localhost")
    valkey_port: int = Field(default=6379)
    valkey_db: int = Field(default=0)

    # Loopback by default: providers cannot reach a dev machine, so webhook
    # registration is skipped until this points at a public host.
    public_base_url: str = Field(default="http://localhost:8000")

    sync_page_size: int = Field(default=50)
    sync_state_stale_seconds: int = Field(default=3600)
    incremental_lookback_days: int = Field(default=7)
    initial_sync_years: int = Field(default=2)
    watch_renewal_margin_hours: int = Field(default=24)

    task_max_attempts: int = Field(default=5)
    task_backoff_base_seconds: int = Field(default=30)
    task_backoff_max_seconds: int = Field(default=3600)
    scheduler_jobstore: str = Field(default="redis")
    scheduler_wakeup_seconds: int = Field(default=5)

    poll_interval_minutes: int = Field(default=60)
    cron_timezone: str = Field(default="UTC")

    http_timeout_seconds: float = Field(default=30.0)
    asana_api_url: str = Field(default="https://app.asana.com/api/1.0")
    github_api_url: str = Field(default="https://api.github.com")

    jwt_secret_key: str = Field(default="super-secret-key")
    jwt_algorithm: str = Field(default="HS256")
    jwt_expire_minutes: int = Field(default=60)

    rate_limit: int = Field(default=60)

    @validator("cors_origins", pre=True)
    def split_cors(cls, value: str | List[str]) -> List[AnyHttpUrl]:
        if isinstance(value, str):
            if not value:
                return []
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @validator("public_base_url")
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
