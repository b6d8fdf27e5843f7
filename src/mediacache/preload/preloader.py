"""
Preload orchestration.

For each source: consult the store; on a miss resolve the direct URL,
stream the bytes, tag them, store them, and hand out a local handle. Batches
run one item at a time with a short pause between items so a long queue of
large assets does not saturate the network.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence

from mediacache.config import Settings
from mediacache.download.cancellation import CancellationToken
from mediacache.download.downloader import Downloader
from mediacache.events import EventHub, Listener, Subscription
from mediacache.exceptions import (
    DownloadCancelled,
    DownloadFailed,
    StoreUnavailable,
    UnresolvableSource,
)
from mediacache.handles import HandleTable
from mediacache.logging import get_logger, log_context
from mediacache.preload.state import PreloadAttempt
from mediacache.sources.resolver import SourceResolver
from mediacache.store.cache_store import CacheStore
from mediacache.types import (
    AssetMetadata,
    FetchedPayload,
    LoadingProgress,
    PreloadEvent,
    PreloadEventType,
    PreloadResult,
    PreloadStage,
    VideoSource,
    generate_id,
)

logger = get_logger(__name__)

ProgressListener = Callable[[LoadingProgress], None]

PRELOAD_PAUSE_SECONDS = 0.1


class Preloader:
    """Fetches assets into the store and mints handles for them.

    Args:
        store: Cache store to consult and populate.
        resolver: Source resolver (default: share-link aware resolver).
        downloader: Downloader (default: a fresh one with its own client).
        handles: Table that owns the minted handles.
        pause_seconds: Pause between items of a batch.
    """

    def __init__(
        self,
        store: CacheStore,
        resolver: SourceResolver | None = None,
        downloader: Downloader | None = None,
        handles: HandleTable | None = None,
        pause_seconds: float = PRELOAD_PAUSE_SECONDS,
    ) -> None:
        self.store = store
        self.resolver = resolver or SourceResolver()
        self.downloader = downloader or Downloader()
        self.handles = handles if handles is not None else HandleTable()
        self.pause_seconds = pause_seconds
        self.events: EventHub[PreloadEvent] = EventHub(
            "preloader", type_of=lambda event: event.type.value
        )
        self._active: dict[str, CancellationToken] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: CacheStore,
        handles: HandleTable | None = None,
    ) -> Preloader:
        return cls(
            store=store,
            downloader=Downloader.from_settings(settings),
            handles=handles,
            pause_seconds=settings.PRELOAD_PAUSE_SECONDS,
        )

    async def close(self) -> None:
        self.cancel_all()
        await self.downloader.close()

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def preload_many(
        self,
        sources: Sequence[VideoSource],
        metadata: Mapping[str, AssetMetadata],
        on_progress: ProgressListener | None = None,
        token: CancellationToken | None = None,
    ) -> dict[str, PreloadResult]:
        """Preload sources one at a time.

        Sources without metadata are skipped. Once ``token`` is cancelled the
        active download is aborted and no further item starts; entries already
        stored stay stored.

        Returns:
            Results keyed by asset ID for every item that was attempted.
        """
        batch_token = token or CancellationToken()
        batch_id = generate_id("batch")
        results: dict[str, PreloadResult] = {}

        with log_context(batch_id=batch_id):
            logger.info("Starting preload batch", count=len(sources))
            await self._ensure_store()

            for index, source in enumerate(sources):
                if batch_token.cancelled:
                    logger.info("Batch cancelled, skipping remaining items", remaining=len(sources) - index)
                    break

                asset_metadata = metadata.get(source.id)
                if asset_metadata is None:
                    logger.warning("No metadata for source, skipping", asset_id=source.id)
                    continue

                item_token = batch_token.child()
                try:
                    results[source.id] = await self.preload_one(
                        source, asset_metadata, on_progress=on_progress, token=item_token
                    )
                finally:
                    batch_token.forget(item_token)

                if index < len(sources) - 1 and await batch_token.sleep(self.pause_seconds):
                    logger.info("Batch cancelled during pause")
                    break

            succeeded = sum(1 for r in results.values() if r.success)
            logger.info(
                "Preload batch finished",
                attempted=len(results),
                succeeded=succeeded,
                from_cache=sum(1 for r in results.values() if r.from_cache),
            )
        return results

    # ------------------------------------------------------------------
    # Single asset
    # ------------------------------------------------------------------

    async def preload_one(
        self,
        source: VideoSource,
        metadata: AssetMetadata,
        on_progress: ProgressListener | None = None,
        token: CancellationToken | None = None,
    ) -> PreloadResult:
        """Run one preload attempt to completion.

        Never raises for resolve/download failures; they come back as a
        failed PreloadResult with the failing stage.
        """
        asset_id = source.id
        attempt = PreloadAttempt(asset_id)
        token = token or CancellationToken()
        self._active[asset_id] = token

        with log_context(asset_id=asset_id):
            self._emit(PreloadEventType.START, asset_id)
            try:
                await self._ensure_store()
                cached = await self.store.lookup(asset_id, source.original_url)
                if cached is not None:
                    attempt.advance(PreloadStage.COMPLETE)
                    handle = self.handles.get(asset_id) or self.handles.mint(
                        asset_id, cached.payload, cached.content_type, from_cache=True
                    )
                    self._report(attempt, cached.size_bytes, cached.size_bytes, on_progress)
                    result = PreloadResult(
                        success=True,
                        asset_id=asset_id,
                        from_cache=True,
                        handle=handle,
                        size_bytes=cached.size_bytes,
                        load_time_ms=attempt.elapsed_ms,
                        persisted=True,
                    )
                    self._emit(PreloadEventType.CACHE_HIT, asset_id, result=result)
                    self._emit(PreloadEventType.COMPLETE, asset_id, result=result)
                    logger.info("Loaded from cache", size=cached.size_bytes)
                    return result

                return await self._fetch_and_store(source, metadata, attempt, token, on_progress)
            finally:
                self._active.pop(asset_id, None)

    async def _fetch_and_store(
        self,
        source: VideoSource,
        metadata: AssetMetadata,
        attempt: PreloadAttempt,
        token: CancellationToken,
        on_progress: ProgressListener | None,
    ) -> PreloadResult:
        asset_id = source.id

        attempt.advance(PreloadStage.FETCHING)
        with log_context(stage=PreloadStage.FETCHING.value):
            self._report(attempt, 0, 0, on_progress)
            try:
                url = self.resolver.resolve(source)
                fetched = await self.downloader.download_payload(
                    url,
                    token,
                    on_progress=lambda loaded, total: self._report(
                        attempt, loaded, total, on_progress
                    ),
                )
            except DownloadCancelled as e:
                return self._finish_failed(attempt, str(e), on_progress, cancelled=True)
            except (UnresolvableSource, DownloadFailed) as e:
                return self._finish_failed(attempt, str(e), on_progress)

        attempt.advance(PreloadStage.PROCESSING)
        content_type = self._content_type(source, fetched)
        size = fetched.size_bytes
        self._report(attempt, size, size, on_progress)

        attempt.advance(PreloadStage.CACHING)
        with log_context(stage=PreloadStage.CACHING.value):
            self._report(attempt, size, size, on_progress)
            persisted = await self.store.store(
                asset_id,
                source.original_url,
                fetched.content,
                metadata.to_dict(),
                content_type=content_type,
            )
            if not persisted:
                logger.warning("Could not persist asset, continuing uncached", size=size)

        attempt.advance(PreloadStage.COMPLETE)
        handle = self.handles.mint(asset_id, fetched.content, content_type, from_cache=False)
        self._report(attempt, size, size, on_progress)

        result = PreloadResult(
            success=True,
            asset_id=asset_id,
            from_cache=False,
            handle=handle,
            size_bytes=size,
            load_time_ms=attempt.elapsed_ms,
            persisted=persisted,
        )
        self._emit(PreloadEventType.COMPLETE, asset_id, result=result)
        logger.info("Downloaded asset", size=size, persisted=persisted)
        return result

    def _finish_failed(
        self,
        attempt: PreloadAttempt,
        message: str,
        on_progress: ProgressListener | None,
        cancelled: bool = False,
    ) -> PreloadResult:
        attempt.fail(message)
        self._report(attempt, 0, 0, on_progress, error=message)
        result = PreloadResult(
            success=False,
            asset_id=attempt.asset_id,
            load_time_ms=attempt.elapsed_ms,
            error=message,
            failed_stage=attempt.failed_stage,
            cancelled=cancelled,
        )
        if cancelled:
            self._emit(PreloadEventType.CANCELLED, attempt.asset_id, result=result)
            logger.info("Preload cancelled")
        else:
            self._emit(PreloadEventType.ERROR, attempt.asset_id, result=result, error=message)
            logger.warning("Preload failed", failed_stage=attempt.failed_stage, error=message)
        return result

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_download(self, asset_id: str) -> bool:
        token = self._active.get(asset_id)
        if token is None:
            return False
        token.cancel(f"cancel_download({asset_id})")
        return True

    def cancel_all(self) -> None:
        for token in list(self._active.values()):
            token.cancel("cancel_all")

    @property
    def active_downloads(self) -> list[str]:
        return list(self._active)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(
        self,
        listener: Listener[PreloadEvent],
        types: list[PreloadEventType] | None = None,
    ) -> Subscription[PreloadEvent]:
        return self.events.subscribe(listener, types)

    def unsubscribe(self, listener: Listener[PreloadEvent]) -> bool:
        return self.events.unsubscribe(listener)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _ensure_store(self) -> None:
        try:
            await self.store.initialize()
        except StoreUnavailable as e:
            logger.warning("Cache store unavailable, preloading without cache", error=str(e))

    @staticmethod
    def _content_type(source: VideoSource, fetched: FetchedPayload) -> str:
        declared = (fetched.content_type or "").split(";")[0].strip().lower()
        if declared.startswith("video/"):
            return declared
        return source.quality.content_type

    def _report(
        self,
        attempt: PreloadAttempt,
        loaded: int,
        total: int,
        on_progress: ProgressListener | None,
        error: str | None = None,
    ) -> None:
        progress = LoadingProgress(
            asset_id=attempt.asset_id,
            loaded=loaded,
            total=total,
            stage=attempt.stage,
            error=error,
        )
        if on_progress:
            on_progress(progress)
        self._emit(PreloadEventType.PROGRESS, attempt.asset_id, progress=progress)

    def _emit(
        self,
        event_type: PreloadEventType,
        asset_id: str,
        progress: LoadingProgress | None = None,
        result: PreloadResult | None = None,
        error: str | None = None,
    ) -> None:
        self.events.emit(
            PreloadEvent(
                type=event_type,
                asset_id=asset_id,
                progress=progress,
                result=result,
                error=error,
            )
        )
