"""
Configuration and settings for the storefront media service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# S3 DeleteObjects accepts at most this many keys per call.
MAX_DELETE_BATCH_SIZE = 1000


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service and its jobs."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Document store (Postgres expected, any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None)

    # S3-compatible storage (Cloudflare R2)
    r2_url: Optional[str] = Field(default=None)
    r2_region: str = Field(default="auto")
    r2_bucket_name: Optional[str] = Field(default=None)
    r2_access_key_id: Optional[str] = Field(default=None)
    r2_secret_access_key: Optional[str] = Field(default=None)
    cdn_url: Optional[str] = Field(default=None)

    # Development toggles
    storefront_use_in_memory_backends: bool = Field(default=False)

    # Run lock (Redis lease when configured, in-process otherwise)
    redis_url: Optional[str] = Field(default=None)
    media_cleanup_lock_key: str = Field(default="storefront:media-cleanup:lock")
    media_cleanup_lock_ttl_seconds: int = Field(default=3600, ge=60)

    # Upload staging area
    temp_upload_dir: str = Field(default="uploads/temp")
    temp_file_max_age_seconds: float = Field(default=3600, ge=0)

    # Reconciliation
    orphan_grace_period_seconds: float = Field(default=300, ge=0)
    delete_batch_size: int = Field(default=MAX_DELETE_BATCH_SIZE, ge=1)

    # Scheduling (UTC)
    scheduler_enabled: bool = Field(default=True)
    media_cleanup_hour: int = Field(default=3, ge=0, le=23)
    media_cleanup_minute: int = Field(default=0, ge=0, le=59)
    temp_cleanup_minute: int = Field(default=0, ge=0, le=59)

    # Admin endpoints; unset means no key check
    admin_api_key: Optional[str] = Field(default=None)

    @property
    def use_in_memory_backends(self) -> bool:
        return self.storefront_use_in_memory_backends

    @property
    def effective_delete_batch_size(self) -> int:
        return min(self.delete_batch_size, MAX_DELETE_BATCH_SIZE)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
