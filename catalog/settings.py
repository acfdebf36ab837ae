from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Storage
    DATABASE_URL: str = "sqlite+aiosqlite:///./catalog.db"

    # Upstream (validated again by UpstreamClient)
    UPSTREAM_URL: str = "https://rickandmortyapi.com/api"
    REQUEST_TIMEOUT: float = 10.0

    # Cache
    CACHE_BACKEND: Literal["memory", "redis"] = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_TTL_SECONDS: int = 300
    CACHE_MAXSIZE: int = 1024

    # Sync
    SEARCH_MAX_PAGES: int = 3
    FULL_SYNC_LIMIT: int = 15
    SYNC_ENABLED: bool = True
    SYNC_INTERVAL_SECONDS: float = 43200  # 12h; use 10 for local dev
    SEED_ON_STARTUP: bool = True

    class Config:
        env_file = ".env"

    @field_validator("UPSTREAM_URL")
    @classmethod
    def _upstream_url_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("UPSTREAM_URL must be set")
        return v.strip()


def get_settings() -> Settings:
    """Build settings from the current environment (re-read on every call)."""
    return Settings()
