from __future__ import annotations

import os
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TAGSYNC__",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")

    tag_sql_file: str = Field(default="./tag_queries.yaml")
    query_reload_seconds: int = Field(default=30)

    # Keyed by dialect id: sqlserver, mysql, postgres
    database_urls: Dict[str, str] = Field(default_factory=dict)
    connection_pool_size: int = Field(default=10)
    connection_timeout_seconds: float = Field(default=60.0)

    cursor_backend: str = Field(default="sql")
    cursor_database_url: str = Field(default="sqlite:///./data/cursors.db")
    valkey_host: str = Field(default="localhost")
    valkey_port: int = Field(default=6379)

    upstream_base_url: str = Field(default="https://wisetime.com/connect/api")
    upstream_api_key: Optional[str] = None
    tag_upsert_path: str = Field(default="/Connectors/")
    upstream_timeout_seconds: float = Field(default=30.0)

    initial_backoff_seconds: float = Field(default=1.0)
    max_backoff_seconds: float = Field(default=300.0)
    max_workers: int = Field(default=4)
    shutdown_grace_seconds: float = Field(default=30.0)

    prometheus_port: int = Field(default=9001)
    scheduler_timezone: str = Field(default="UTC")

    @validator("database_urls", pre=True)
    def normalize_dialect_keys(cls, value: Dict[str, str]) -> Dict[str, str]:
        if not value:
            return {}
        return {key.strip().lower(): url for key, url in value.items()}

    @validator("tag_sql_file")
    def expand_user_path(cls, value: str) -> str:
        return os.path.expanduser(value)

    @validator("tag_upsert_path")
    def check_upsert_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("tag path should start with /")
        return value

    @validator("cursor_backend")
    def check_cursor_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in {"sql", "valkey"}:
            raise ValueError("cursor_backend must be 'sql' or 'valkey'")
        return value

    @validator("connection_pool_size", "max_workers")
    def check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @validator("max_backoff_seconds")
    def check_backoff(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("max_backoff_seconds must be positive")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
