"""
Configuration and settings for the receipt portal gateway.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the backend gateway."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Hosted backend (Supabase)
    supabase_url: Optional[str] = Field(default=None)
    supabase_anon_key: Optional[str] = Field(default=None)
    receipts_bucket: str = Field(default="receipts")

    # Direct Postgres access (optional, replaces the PostgREST record store)
    database_url: Optional[str] = Field(default=None)

    # S3-compatible storage (optional, replaces the Supabase blob store)
    storage_endpoint: Optional[str] = Field(default=None)
    storage_region: Optional[str] = Field(default=None)
    storage_access_key_id: Optional[str] = Field(default=None)
    storage_secret_access_key: Optional[str] = Field(default=None)
    storage_public_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
