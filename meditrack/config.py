"""
Configuration and settings for the MediTrack backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")

    # Database (Postgres expected). Unset means memory-only storage.
    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")
    database_timeout_seconds: float = Field(default=5.0)

    # Hybrid store behaviour
    health_check_interval_seconds: float = Field(default=30.0)
    storage_mirror_writes: bool = Field(default=True)
    storage_replay_on_promotion: bool = Field(default=True)

    # Development toggles (USE_IN_MEMORY_BACKENDS)
    use_in_memory_backends: bool = Field(default=False)

    # Sessions (Redis when configured, in-process otherwise)
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    session_key_prefix: str = Field(default="meditrack:session:")
    session_cookie_name: str = Field(default="sid")
    session_ttl_seconds: int = Field(default=24 * 60 * 60)
    session_cookie_secure: bool = Field(default=False)
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # Google OAuth. Both must be set for /auth/google to work.
    google_client_id: Optional[str] = Field(default=None, env="GOOGLE_CLIENT_ID")
    google_client_secret: Optional[str] = Field(
        default=None, env="GOOGLE_CLIENT_SECRET"
    )
    google_callback_url: str = Field(default="/auth/google/callback")

    @property
    def google_oauth_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)


def async_database_url(url: str) -> str:
    """
    Point plain Postgres URLs at the asyncpg driver; leave explicit drivers alone.
    """
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
