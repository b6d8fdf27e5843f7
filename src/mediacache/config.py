"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files and exposes
the store budgets as a CacheConfig.
"""

from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mediacache import __version__
from mediacache.types import MIB, CacheConfig

_NAMESPACE_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Cache budgets:
        MAX_CACHE_BYTES: Total byte budget for cached payloads
        MAX_ENTRY_COUNT: Maximum number of cached assets
        SCHEMA_VERSION: Entries written under another version are purged
        STORE_NAMESPACE: Database name inside CACHE_DIR

    Networking:
        DOWNLOAD_TIMEOUT_SECONDS, DOWNLOAD_MAX_ATTEMPTS, DOWNLOAD_CHUNK_SIZE,
        PRELOAD_PAUSE_SECONDS, USER_AGENT

    Other:
        CACHE_DIR, CATALOG_PATH, LOG_LEVEL, LOG_FILE
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    MAX_CACHE_BYTES: int = Field(
        default=500 * MIB, gt=0, description="Total byte budget for the cache"
    )
    MAX_ENTRY_COUNT: int = Field(
        default=20, gt=0, le=10_000, description="Maximum number of cached entries"
    )
    SCHEMA_VERSION: str = Field(
        default="1.0.0", min_length=1, description="On-disk entry format version"
    )
    STORE_NAMESPACE: str = Field(
        default="media-cache", description="Logical store (database) name"
    )

    CACHE_DIR: Path = Field(default=Path(".cache"), description="Cache directory")
    CATALOG_PATH: Path | None = Field(
        default=None, description="JSON file listing the content to preload"
    )

    DOWNLOAD_TIMEOUT_SECONDS: float = Field(
        default=60.0, gt=0.0, description="HTTP timeout per request"
    )
    DOWNLOAD_MAX_ATTEMPTS: int = Field(
        default=3, ge=1, le=10, description="Attempts on transient network errors"
    )
    DOWNLOAD_CHUNK_SIZE: int = Field(
        default=256 * 1024, ge=1024, description="Streamed read chunk size in bytes"
    )
    PRELOAD_PAUSE_SECONDS: float = Field(
        default=0.1, ge=0.0, le=10.0, description="Pause between batch items"
    )
    USER_AGENT: str = Field(
        default=f"media-cache/{__version__}", description="User-Agent header"
    )

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON Lines log file")

    @field_validator("STORE_NAMESPACE")
    @classmethod
    def validate_store_namespace(cls, v: str) -> str:
        """The namespace becomes a file name, so keep it path-safe."""
        if not _NAMESPACE_RE.match(v):
            raise ValueError(
                "STORE_NAMESPACE may only contain letters, digits, '.', '_' and '-'"
            )
        return v

    @property
    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            max_cache_bytes=self.MAX_CACHE_BYTES,
            max_entry_count=self.MAX_ENTRY_COUNT,
            schema_version=self.SCHEMA_VERSION,
            store_namespace=self.STORE_NAMESPACE,
        )

    @property
    def db_path(self) -> Path:
        return self.CACHE_DIR / f"{self.STORE_NAMESPACE}.db"

    def ensure_directories(self) -> None:
        """Create the cache directory if it doesn't exist."""
        self.CACHE_DIR.mkdir(parents=True, exist_ok=True)

    def display(self) -> dict[str, str | int | float | None]:
        """Return settings as plain values for the CLI."""
        return {
            "MAX_CACHE_BYTES": self.MAX_CACHE_BYTES,
            "MAX_ENTRY_COUNT": self.MAX_ENTRY_COUNT,
            "SCHEMA_VERSION": self.SCHEMA_VERSION,
            "STORE_NAMESPACE": self.STORE_NAMESPACE,
            "CACHE_DIR": str(self.CACHE_DIR),
            "CATALOG_PATH": str(self.CATALOG_PATH) if self.CATALOG_PATH else None,
            "DOWNLOAD_TIMEOUT_SECONDS": self.DOWNLOAD_TIMEOUT_SECONDS,
            "DOWNLOAD_MAX_ATTEMPTS": self.DOWNLOAD_MAX_ATTEMPTS,
            "DOWNLOAD_CHUNK_SIZE": self.DOWNLOAD_CHUNK_SIZE,
            "PRELOAD_PAUSE_SECONDS": self.PRELOAD_PAUSE_SECONDS,
            "USER_AGENT": self.USER_AGENT,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
