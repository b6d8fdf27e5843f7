"""
Coordination point between callers and the cache.

CacheManager owns one CacheStore, one Preloader and the HandleTable shared
between them. It maps (logical_id, variant) to internal cache keys, keeps
handles in step with the store (explicit removal and source rotation release
the matching handle; budget eviction only drops the persisted copy) and
notifies subscribers whenever an asset enters or leaves the cached state.

Usage:
    async with CacheManager.from_settings(catalog=catalog) as manager:
        handle = await manager.preload("hero", Variant.MP4)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from mediacache.config import Settings, get_settings
from mediacache.download.cancellation import CancellationToken
from mediacache.events import EventHub, Listener, Subscription
from mediacache.exceptions import StoreUnavailable, UnknownAssetError
from mediacache.handles import HandleTable, LocalHandle
from mediacache.logging import get_logger
from mediacache.preload.preloader import Preloader, ProgressListener
from mediacache.sources.catalog import ContentCatalog
from mediacache.store.cache_store import CacheStore
from mediacache.types import (
    CacheEvent,
    CacheEventType,
    CacheStats,
    CacheUpdate,
    PreloadResult,
    Variant,
    cache_key,
    split_cache_key,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class CachedAssetInfo:
    """What the manager knows about one asset with a live handle."""

    asset_id: str
    logical_id: str
    variant: Variant | None
    url: str
    size_bytes: int
    from_cache: bool
    content_type: str


@dataclass(frozen=True)
class ManagerStats:
    """Store statistics plus the in-memory handle table."""

    store: CacheStats
    handle_count: int
    handle_bytes: int
    ready: bool


class CacheManager:
    """Façade over store, preloader and handles.

    Args:
        catalog: The configured content list.
        store: Persistent store (not yet initialized).
        preloader: Preloader; built around ``store`` if omitted.
        handles: Handle table; taken from the preloader if omitted.
    """

    def __init__(
        self,
        catalog: ContentCatalog,
        store: CacheStore,
        preloader: Preloader | None = None,
        handles: HandleTable | None = None,
    ) -> None:
        self.catalog = catalog
        self.store = store
        if preloader is None:
            self.handles = handles if handles is not None else HandleTable()
            self.preloader = Preloader(store, handles=self.handles)
        else:
            self.preloader = preloader
            self.handles = handles if handles is not None else preloader.handles
            self.preloader.handles = self.handles
        self.updates: EventHub[CacheUpdate] = EventHub("cache-manager")
        self._init_task: asyncio.Task[bool] | None = None
        self._ready = False
        self._closed = False
        self._store_subscription = store.subscribe(
            self._on_store_event,
            [
                CacheEventType.MISS,
                CacheEventType.EVICTED,
                CacheEventType.REMOVED,
                CacheEventType.CLEARED,
            ],
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        catalog: ContentCatalog | None = None,
    ) -> CacheManager:
        """Build a manager from settings, loading CATALOG_PATH if no catalog is given."""
        settings = settings or get_settings()
        if catalog is None:
            catalog = (
                ContentCatalog.from_file(settings.CATALOG_PATH)
                if settings.CATALOG_PATH
                else ContentCatalog()
            )
        store = CacheStore(settings.CACHE_DIR, settings.cache_config)
        handles = HandleTable()
        preloader = Preloader.from_settings(settings, store, handles=handles)
        return cls(catalog, store, preloader=preloader, handles=handles)

    @property
    def ready(self) -> bool:
        return self._ready

    async def __aenter__(self) -> CacheManager:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        """Open the store once and mint handles for assets already cached.

        Returns:
            True if a persistent store is available. False means the manager
            keeps working without a cache.
        """
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        return await asyncio.shield(self._init_task)

    async def _initialize(self) -> bool:
        try:
            await self.store.initialize()
        except StoreUnavailable as e:
            logger.warning("Running without a persistent cache", error=str(e))
            return False

        self._ready = True
        minted = await self._scan()
        logger.info("Cache manager ready", cached_assets=len(minted))
        return True

    async def close(self) -> None:
        """Release every handle, stop downloads and close the store."""
        if self._closed:
            return
        self._closed = True
        released = self.handles.release_all()
        self._store_subscription.cancel()
        await self.preloader.close()
        await self.store.close()
        self.updates.clear()
        logger.info("Cache manager closed", released_handles=len(released))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_handle(self, logical_id: str, variant: Variant = Variant.MP4) -> LocalHandle | None:
        """The live handle for an asset variant, if one has been minted."""
        return self.handles.get(cache_key(logical_id, variant))

    def is_cached(self, logical_id: str, variant: Variant = Variant.MP4) -> bool:
        return cache_key(logical_id, variant) in self.handles

    def get_info(
        self, logical_id: str, variant: Variant = Variant.MP4
    ) -> CachedAssetInfo | None:
        handle = self.get_handle(logical_id, variant)
        if handle is None:
            return None
        return CachedAssetInfo(
            asset_id=handle.asset_id,
            logical_id=logical_id,
            variant=variant,
            url=handle.url,
            size_bytes=handle.size_bytes,
            from_cache=handle.from_cache,
            content_type=handle.content_type,
        )

    async def stats(self) -> ManagerStats:
        return ManagerStats(
            store=await self.store.stats(),
            handle_count=len(self.handles),
            handle_bytes=self.handles.total_bytes,
            ready=self._ready,
        )

    # ------------------------------------------------------------------
    # Preloading
    # ------------------------------------------------------------------

    async def preload(
        self,
        logical_id: str,
        variant: Variant = Variant.MP4,
        on_progress: ProgressListener | None = None,
        token: CancellationToken | None = None,
    ) -> LocalHandle | None:
        """Preload one asset variant on demand.

        A live handle is returned as is; consumers already holding it keep
        a valid reference.

        Returns:
            The handle, or None if the asset is unknown or failed.
        """
        await self.initialize()
        existing = self.get_handle(logical_id, variant)
        if existing is not None:
            return existing
        try:
            source, metadata = self.catalog.source_for(logical_id, variant)
        except UnknownAssetError as e:
            logger.warning("Cannot preload unknown asset", error=str(e))
            return None

        result = await self.preloader.preload_one(
            source, metadata, on_progress=on_progress, token=token
        )
        self._absorb(result)
        return result.handle if result.success else None

    async def preload_all(
        self,
        on_progress: ProgressListener | None = None,
        token: CancellationToken | None = None,
    ) -> dict[str, PreloadResult]:
        """Preload the catalog's priority sources (mp4, or webm when no mp4 exists)."""
        await self.initialize()
        sources = self.catalog.priority_sources()
        live = {source.id: self.handles.get(source.id) for source in sources}
        results = await self.preloader.preload_many(
            sources,
            self.catalog.metadata_map(),
            on_progress=on_progress,
            token=token,
        )
        for result in results.values():
            self._absorb(result, previous=live.get(result.asset_id))
        return results

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def evict(self, logical_id: str) -> bool:
        """Remove every variant of a logical asset from store and handle table.

        Returns:
            True if anything was removed.
        """
        removed_any = False
        for variant in Variant:
            asset_id = cache_key(logical_id, variant)
            # A successful remove() is reported back through _on_store_event.
            if await self.store.remove(asset_id):
                removed_any = True
            elif asset_id in self.handles:
                self._drop(asset_id)
                removed_any = True
        if removed_any:
            logger.info("Evicted asset", logical_id=logical_id)
        return removed_any

    async def clear(self) -> bool:
        """Empty the store and release every handle."""
        cleared = await self.store.clear()
        if not cleared:
            # No CLEARED event arrives when the store is unavailable.
            self._release_all()
        return cleared

    async def refresh(self) -> int:
        """Release all handles and re-mint them from the store.

        Returns:
            The number of handles after the rescan.
        """
        before = set(self.handles.release_all())
        after = set(await self._scan(notify=False)) if self._ready else set()

        for asset_id in sorted(before - after):
            self._notify(asset_id, cached=False)
        for asset_id in sorted(after - before):
            handle = self.handles.get(asset_id)
            self._notify(
                asset_id,
                cached=True,
                size_bytes=handle.size_bytes if handle else 0,
                from_cache=True,
            )
        logger.info("Refreshed handles", count=len(after))
        return len(after)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: Listener[CacheUpdate]) -> Subscription[CacheUpdate]:
        """Call ``callback`` whenever an asset enters or leaves the cache."""
        return self.updates.subscribe(callback)

    def unsubscribe(self, callback: Listener[CacheUpdate]) -> bool:
        return self.updates.unsubscribe(callback)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _scan(self, notify: bool = True) -> list[str]:
        """Mint handles for catalog sources that have a valid cached entry."""
        minted = []
        for source in self.catalog.sources():
            entry = await self.store.lookup(source.id, source.original_url)
            if entry is None:
                continue
            self.handles.mint(source.id, entry.payload, entry.content_type, from_cache=True)
            minted.append(source.id)
            if notify:
                self._notify(source.id, cached=True, size_bytes=entry.size_bytes, from_cache=True)
        return minted

    def _absorb(self, result: PreloadResult, previous: LocalHandle | None = None) -> None:
        if result.success and result.handle is not None and result.handle is not previous:
            self._notify(
                result.asset_id,
                cached=True,
                size_bytes=result.size_bytes,
                from_cache=result.from_cache,
            )

    def _on_store_event(self, event: CacheEvent) -> None:
        if event.type is CacheEventType.CLEARED:
            self._release_all()
        elif event.type is CacheEventType.MISS:
            if event.data.get("reason") == "source-changed" and event.asset_id:
                self._drop(event.asset_id)
        elif event.type is CacheEventType.EVICTED:
            # Budget eviction drops the persisted copy only; the handle's bytes stay usable.
            if event.asset_id:
                self._notify(event.asset_id, cached=False)
        elif event.asset_id:
            self._drop(event.asset_id)

    def _drop(self, asset_id: str) -> None:
        self.handles.release_asset(asset_id)
        self._notify(asset_id, cached=False)

    def _release_all(self) -> None:
        for asset_id in self.handles.release_all():
            self._notify(asset_id, cached=False)

    def _notify(
        self,
        asset_id: str,
        cached: bool,
        size_bytes: int = 0,
        from_cache: bool = False,
    ) -> None:
        split = split_cache_key(asset_id)
        logical_id, variant = split if split else (asset_id, None)
        self.updates.emit(
            CacheUpdate(
                logical_id=logical_id,
                variant=variant,
                asset_id=asset_id,
                cached=cached,
                size_bytes=size_bytes,
                from_cache=from_cache,
            )
        )
