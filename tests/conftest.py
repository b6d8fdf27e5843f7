"""
Pytest configuration and fixtures for media cache tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator, Generator
from unittest.mock import patch

import pytest

from mediacache.config import Settings, clear_settings_cache
from mediacache.sources.catalog import ContentCatalog, ContentItem
from mediacache.store.cache_store import CacheStore
from mediacache.types import CacheConfig


class FakeClock:
    """Manually advanced wall clock for deterministic timestamps."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 1.0) -> None:
        self.now += seconds


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "MAX_CACHE_BYTES": "10000000",
        "MAX_ENTRY_COUNT": "10",
        "SCHEMA_VERSION": "1.0.0",
        "STORE_NAMESPACE": "test-media",
        "CACHE_DIR": ".test_cache",
        "DOWNLOAD_MAX_ATTEMPTS": "2",
        "PRELOAD_PAUSE_SECONDS": "0",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str], temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration.

    Uses temp_dir for the cache directory.
    """
    with patch.dict(os.environ, {"CACHE_DIR": str(temp_dir / "cache")}):
        clear_settings_cache()
        from mediacache.config import get_settings

        settings = get_settings()
        settings.ensure_directories()
        yield settings
        clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_config() -> CacheConfig:
    """The budgets used throughout the store scenarios."""
    return CacheConfig(
        max_cache_bytes=10_000_000,
        max_entry_count=10,
        schema_version="1.0.0",
        store_namespace="test-media",
    )


@pytest.fixture
async def cache_store(
    temp_dir: Path, cache_config: CacheConfig, clock: FakeClock
) -> AsyncGenerator[CacheStore, None]:
    """Create an initialized cache store for testing."""
    store = CacheStore(temp_dir / "cache", cache_config, clock=clock)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def catalog() -> ContentCatalog:
    """Two assets: one with both variants, one mp4-only share link."""
    return ContentCatalog(
        [
            ContentItem(
                id="hero",
                label="Hero",
                title="Mountains",
                webm="https://cdn.example.com/hero.webm",
                mp4="https://cdn.example.com/hero.mp4",
                duration=12.5,
            ),
            ContentItem(
                id="coast",
                label="Coast",
                mp4="https://drive.google.com/file/d/1AbCdEfGhIjK/view?usp=sharing",
            ),
        ]
    )


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
