from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"

    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_temperature: float = 0.7
    gemini_timeout_seconds: float = 60.0
    gemini_system_instructions: str | None = None

    # Usage is never metered when set; local development runs with this on.
    unmetered: bool = False
    daily_limit: int = 20

    cache_ttl_days: int = 7
    citation_offset_unit: Literal["char", "byte"] = "char"

    storage_backend: Literal["memory", "local", "sql"] = "local"
    local_storage_path: Path = Path(".newsdash_storage")
    storage_quota_bytes: int = 5 * 1024 * 1024

    database_url: str = "sqlite:///./newsdash.db"


settings = Settings()
