"""
Core types for the media cache.

This module defines the data structures shared by the store, the preloader
and the manager:
- Enums for source kinds, variants, preload stages and event types
- Frozen dataclasses for persisted and descriptive records (CacheEntry,
  VideoSource, AssetMetadata)
- Progress/result records produced by the preloader
- Helpers for IDs, timestamps, cache keys and URL fingerprints
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from uuid6 import uuid7

from mediacache.exceptions import ConfigurationError

if TYPE_CHECKING:
    from mediacache.handles import LocalHandle


MIB = 1024 * 1024


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7."""
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def from_micros(value: int) -> datetime:
    """Convert integer microseconds since the epoch to an aware datetime."""
    return datetime.fromtimestamp(value / 1_000_000, tz=timezone.utc)


def fingerprint_url(url: str) -> str:
    """Stable SHA-256 fingerprint of a source URL."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


class SourceKind(str, Enum):
    """How a source URL must be treated before it can be fetched."""

    DIRECT = "direct"
    INDIRECT_SHARE = "indirect-share"


class Variant(str, Enum):
    """Quality/container variant of a logical asset."""

    WEBM = "webm"
    MP4 = "mp4"

    @property
    def content_type(self) -> str:
        return f"video/{self.value}"


def cache_key(logical_id: str, variant: Variant | str) -> str:
    """Map a logical asset and variant to the internal cache key."""
    return f"{logical_id}_{Variant(variant).value}"


def split_cache_key(asset_id: str) -> tuple[str, Variant] | None:
    """Split an internal cache key back into (logical_id, variant).

    Returns None when the key does not end in a known variant suffix.
    """
    logical_id, sep, suffix = asset_id.rpartition("_")
    if not sep or not logical_id:
        return None
    try:
        return logical_id, Variant(suffix)
    except ValueError:
        return None


class PreloadStage(str, Enum):
    """States of one preload attempt."""

    PENDING = "pending"
    FETCHING = "fetching"
    PROCESSING = "processing"
    CACHING = "caching"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (PreloadStage.COMPLETE, PreloadStage.ERROR)


class CacheEventType(str, Enum):
    """Events published by CacheStore."""

    HIT = "hit"
    MISS = "miss"
    STORED = "stored"
    EVICTED = "evicted"
    REMOVED = "removed"
    CLEARED = "cleared"
    ERROR = "error"


class PreloadEventType(str, Enum):
    """Events published by Preloader."""

    START = "start"
    PROGRESS = "progress"
    CACHE_HIT = "cache-hit"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class CacheConfig:
    """Budgets and naming for one CacheStore.

    Attributes:
        max_cache_bytes: Total byte budget across all entries.
        max_entry_count: Maximum number of entries.
        schema_version: Bump to invalidate every prior entry on next start.
        store_namespace: Logical store name; becomes the database file name.
    """

    max_cache_bytes: int = 500 * MIB
    max_entry_count: int = 20
    schema_version: str = "1.0.0"
    store_namespace: str = "media-cache"

    def __post_init__(self) -> None:
        if self.max_cache_bytes <= 0:
            raise ConfigurationError(
                "max_cache_bytes must be positive",
                context={"max_cache_bytes": self.max_cache_bytes},
            )
        if self.max_entry_count <= 0:
            raise ConfigurationError(
                "max_entry_count must be positive",
                context={"max_entry_count": self.max_entry_count},
            )
        if not self.schema_version:
            raise ConfigurationError("schema_version must not be empty")


@dataclass(frozen=True)
class VideoSource:
    """Descriptor of one fetchable variant of an asset."""

    id: str
    original_url: str
    kind: SourceKind = SourceKind.DIRECT
    quality: Variant = Variant.MP4


@dataclass(frozen=True)
class AssetMetadata:
    """Descriptive fields stored alongside a cached payload.

    The store never interprets these; they are persisted as a JSON object.
    """

    id: str
    label: str
    title: str = ""
    subtitle: str = ""
    description: str = ""
    thumbnail: str = ""
    duration: float | None = None
    format: Variant = Variant.MP4
    quality: str = "hd"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "title": self.title,
            "subtitle": self.subtitle,
            "description": self.description,
            "thumbnail": self.thumbnail,
            "duration": self.duration,
            "format": self.format.value,
            "quality": self.quality,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AssetMetadata:
        return cls(
            id=data["id"],
            label=data.get("label", data["id"]),
            title=data.get("title", ""),
            subtitle=data.get("subtitle", ""),
            description=data.get("description", ""),
            thumbnail=data.get("thumbnail", ""),
            duration=data.get("duration"),
            format=Variant(data.get("format", Variant.MP4.value)),
            quality=data.get("quality", "hd"),
        )


@dataclass(frozen=True)
class CacheEntry:
    """One persisted record per cached asset."""

    asset_id: str
    source_url: str
    source_fingerprint: str
    payload: bytes = field(repr=False)
    content_type: str
    metadata: dict[str, Any]
    cached_at: datetime
    last_accessed_at: datetime
    size_bytes: int
    schema_version: str


@dataclass(frozen=True)
class CacheStats:
    """Aggregate view of a store.

    hits/misses are counted per store instance for the current session.
    """

    total_bytes: int = 0
    entry_count: int = 0
    oldest_cached_at: datetime | None = None
    newest_cached_at: datetime | None = None
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


@dataclass(frozen=True)
class CacheEvent:
    """An event published by CacheStore."""

    type: CacheEventType
    asset_id: str | None
    timestamp: datetime = field(default_factory=utc_now)
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FetchedPayload:
    """Bytes of one completed download."""

    url: str
    content: bytes = field(repr=False)
    content_type: str | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class LoadingProgress:
    """Progress of one in-flight preload. Never persisted."""

    asset_id: str
    loaded: int
    total: int
    stage: PreloadStage
    error: str | None = None

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return min(100, round(self.loaded / self.total * 100))


@dataclass(frozen=True)
class PreloadResult:
    """Outcome of one preload attempt."""

    success: bool
    asset_id: str
    from_cache: bool = False
    handle: LocalHandle | None = None
    size_bytes: int = 0
    load_time_ms: float = 0.0
    error: str | None = None
    failed_stage: PreloadStage | None = None
    cancelled: bool = False
    persisted: bool = False


@dataclass(frozen=True)
class PreloadEvent:
    """An event published by Preloader."""

    type: PreloadEventType
    asset_id: str
    progress: LoadingProgress | None = None
    result: PreloadResult | None = None
    error: str | None = None


@dataclass(frozen=True)
class CacheUpdate:
    """Notification that an asset moved into or out of cached state."""

    logical_id: str
    variant: Variant | None
    asset_id: str
    cached: bool
    size_bytes: int = 0
    from_cache: bool = False
