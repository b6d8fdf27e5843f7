"""
Configured list of logical assets.

The catalog is supplied by configuration (a JSON file or constructed in
code); this package never fetches it. Each ContentItem may offer a webm and
an mp4 variant, which become separate VideoSource/AssetMetadata pairs keyed
by ``cache_key(item.id, variant)``.

JSON layout::

    {"items": [{"id": "hero", "label": "Hero", "webm": "...", "mp4": "..."}]}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import orjson

from mediacache.exceptions import ConfigurationError, UnknownAssetError
from mediacache.logging import get_logger
from mediacache.sources.resolver import extract_file_id, is_share_url
from mediacache.types import AssetMetadata, SourceKind, Variant, VideoSource, cache_key

logger = get_logger(__name__)

VIDEO_EXTENSIONS = (".mp4", ".webm", ".mov", ".avi", ".mkv")


@dataclass(frozen=True)
class ContentItem:
    """One logical asset with up to two variant URLs."""

    id: str
    label: str
    title: str = ""
    subtitle: str = ""
    description: str = ""
    thumbnail: str = ""
    webm: str | None = None
    mp4: str | None = None
    duration: float | None = None

    def url_for(self, variant: Variant) -> str | None:
        return self.webm if variant is Variant.WEBM else self.mp4

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContentItem:
        try:
            item_id = data["id"]
        except KeyError as e:
            raise ConfigurationError("Catalog item is missing 'id'", context={"item": data}) from e
        return cls(
            id=item_id,
            label=data.get("label", item_id),
            title=data.get("title", ""),
            subtitle=data.get("subtitle", ""),
            description=data.get("description", ""),
            thumbnail=data.get("thumbnail", ""),
            webm=data.get("webm") or data.get("src"),
            mp4=data.get("mp4"),
            duration=data.get("duration"),
        )


@dataclass(frozen=True)
class UrlValidation:
    """Result of validate_video_url()."""

    is_valid: bool
    kind: SourceKind
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


def validate_video_url(url: str) -> UrlValidation:
    """Check that a URL is usable as a video source."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return UrlValidation(False, SourceKind.DIRECT, errors=("Invalid URL format",))

    if is_share_url(url):
        if extract_file_id(url) is None:
            return UrlValidation(
                False,
                SourceKind.INDIRECT_SHARE,
                errors=("Cannot extract file ID from share link",),
            )
        return UrlValidation(True, SourceKind.INDIRECT_SHARE)

    if not parsed.path.lower().endswith(VIDEO_EXTENSIONS):
        return UrlValidation(
            True,
            SourceKind.DIRECT,
            warnings=("URL does not look like a video file",),
        )
    return UrlValidation(True, SourceKind.DIRECT)


@dataclass
class ContentCatalog:
    """The content-descriptor list for the cache."""

    items: list[ContentItem] = field(default_factory=list)

    @classmethod
    def from_file(cls, path: str | Path) -> ContentCatalog:
        """Load a catalog from JSON.

        Raises:
            ConfigurationError: If the file is missing or malformed.
        """
        path = Path(path)
        try:
            data = orjson.loads(path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            raise ConfigurationError(
                "Cannot read content catalog", context={"path": str(path)}
            ) from e

        raw_items = data.get("items") if isinstance(data, dict) else data
        if not isinstance(raw_items, list):
            raise ConfigurationError(
                "Content catalog must be a list of items", context={"path": str(path)}
            )
        catalog = cls([ContentItem.from_dict(item) for item in raw_items])
        logger.debug("Loaded content catalog", path=str(path), items=len(catalog.items))
        return catalog

    def get_item(self, logical_id: str) -> ContentItem:
        for item in self.items:
            if item.id == logical_id:
                return item
        raise UnknownAssetError("Asset not in catalog", context={"logical_id": logical_id})

    def original_url(self, logical_id: str, variant: Variant = Variant.MP4) -> str:
        url = self.get_item(logical_id).url_for(variant)
        if not url:
            raise UnknownAssetError(
                "Asset has no such variant",
                context={"logical_id": logical_id, "variant": variant.value},
            )
        return url

    def source_for(
        self, logical_id: str, variant: Variant = Variant.MP4
    ) -> tuple[VideoSource, AssetMetadata]:
        item = self.get_item(logical_id)
        built = self._build(item, variant)
        if built is None:
            raise UnknownAssetError(
                "Asset has no such variant",
                context={"logical_id": logical_id, "variant": variant.value},
            )
        return built

    def sources(self) -> list[VideoSource]:
        """All variants of all items, webm before mp4 per item."""
        return [source for source, _ in self._all()]

    def metadata_map(self) -> dict[str, AssetMetadata]:
        return {source.id: metadata for source, metadata in self._all()}

    def priority_sources(self) -> list[VideoSource]:
        """mp4 variants, or webm variants when no item offers mp4."""
        all_sources = self.sources()
        preferred = [s for s in all_sources if s.quality is Variant.MP4]
        return preferred or [s for s in all_sources if s.quality is Variant.WEBM]

    def fallback_sources(self, primary_id: str) -> list[VideoSource]:
        """mp4 sources of every other item."""
        return [
            s
            for s in self.sources()
            if s.quality is Variant.MP4 and not s.id.startswith(f"{primary_id}_")
        ]

    def _all(self) -> list[tuple[VideoSource, AssetMetadata]]:
        pairs = []
        for item in self.items:
            for variant in (Variant.WEBM, Variant.MP4):
                built = self._build(item, variant)
                if built:
                    pairs.append(built)
        return pairs

    @staticmethod
    def _build(
        item: ContentItem, variant: Variant
    ) -> tuple[VideoSource, AssetMetadata] | None:
        url = item.url_for(variant)
        if not url:
            return None
        share = is_share_url(item.webm or "") or is_share_url(item.mp4 or "")
        asset_id = cache_key(item.id, variant)
        source = VideoSource(
            id=asset_id,
            original_url=url,
            kind=SourceKind.INDIRECT_SHARE if share else SourceKind.DIRECT,
            quality=variant,
        )
        metadata = AssetMetadata(
            id=asset_id,
            label=f"{item.label} ({variant.value.upper()})",
            title=item.title,
            subtitle=item.subtitle,
            description=item.description,
            thumbnail=item.thumbnail,
            duration=item.duration,
            format=variant,
        )
        return source, metadata


def create_source_from_url(
    asset_id: str, url: str, **metadata: Any
) -> tuple[VideoSource, AssetMetadata]:
    """Build an ad-hoc source for a URL outside the catalog.

    Raises:
        ConfigurationError: If the URL fails validation.
    """
    validation = validate_video_url(url)
    if not validation.is_valid:
        raise ConfigurationError(
            f"Invalid video URL: {', '.join(validation.errors)}", context={"url": url}
        )

    variant = Variant.WEBM if ".webm" in url.lower() else Variant.MP4
    source = VideoSource(id=asset_id, original_url=url, kind=validation.kind, quality=variant)
    asset_metadata = AssetMetadata(
        id=asset_id,
        label=metadata.get("label", "Custom Video"),
        title=metadata.get("title", "Custom Video"),
        subtitle=metadata.get("subtitle", "User Provided"),
        description=metadata.get("description", "Custom video source"),
        thumbnail=metadata.get("thumbnail", ""),
        duration=metadata.get("duration"),
        format=variant,
        quality=metadata.get("quality", "hd"),
    )
    return source, asset_metadata
