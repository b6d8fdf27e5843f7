"""
Tests for the preloader.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock

import httpx
import pytest

from mediacache.download.cancellation import CancellationToken
from mediacache.download.downloader import Downloader
from mediacache.handles import HandleTable
from mediacache.logging import current_context
from mediacache.preload.preloader import Preloader
from mediacache.sources.catalog import ContentCatalog
from mediacache.store.cache_store import CacheStore
from mediacache.types import (
    AssetMetadata,
    LoadingProgress,
    PreloadEvent,
    PreloadEventType,
    PreloadStage,
    SourceKind,
    Variant,
    VideoSource,
)

HERO_MP4 = "https://cdn.example.com/hero.mp4"
HERO_BYTES = b"\x00\x00\x00\x18ftypmp42" * 100
COAST_BYTES = b"coast" * 50


class StallingStream(httpx.AsyncByteStream):
    def __init__(self) -> None:
        self.stalled = asyncio.Event()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield b"partial"
        self.stalled.set()
        await asyncio.sleep(3600)
        yield b"never"


def serve(routes: dict[str, httpx.Response], seen: list[str] | None = None) -> Downloader:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if seen is not None:
            seen.append(url)
        for prefix, response in routes.items():
            if url.startswith(prefix):
                return response
        return httpx.Response(404)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Downloader(client=client, chunk_size=1024)


def default_routes() -> dict[str, httpx.Response]:
    return {
        HERO_MP4: httpx.Response(200, content=HERO_BYTES, headers={"content-type": "video/mp4"}),
        "https://drive.google.com/uc?export=download&id=1AbCdEfGhIjK": httpx.Response(
            200,
            content=COAST_BYTES,
            headers={"content-type": "application/octet-stream"},
        ),
    }


@pytest.fixture
def preloader(cache_store: CacheStore) -> Preloader:
    return Preloader(cache_store, downloader=serve(default_routes()), pause_seconds=0)


class TestPreloadOne:
    """Tests for a single preload attempt."""

    @pytest.mark.asyncio
    async def test_miss_downloads_and_stores(
        self, preloader: Preloader, cache_store: CacheStore, catalog: ContentCatalog
    ) -> None:
        source, metadata = catalog.source_for("hero", Variant.MP4)
        stages: list[PreloadStage] = []

        result = await preloader.preload_one(
            source, metadata, on_progress=lambda p: stages.append(p.stage)
        )

        assert result.success
        assert not result.from_cache
        assert result.persisted
        assert result.size_bytes == len(HERO_BYTES)
        assert result.load_time_ms >= 0
        assert result.handle is not None
        assert result.handle.read() == HERO_BYTES
        assert result.handle.content_type == "video/mp4"

        entry = await cache_store.lookup("hero_mp4", HERO_MP4)
        assert entry is not None
        assert entry.metadata["label"] == "Hero (MP4)"

        # Stages only move forward.
        distinct = list(dict.fromkeys(stages))
        assert distinct == [
            PreloadStage.FETCHING,
            PreloadStage.PROCESSING,
            PreloadStage.CACHING,
            PreloadStage.COMPLETE,
        ]

    @pytest.mark.asyncio
    async def test_share_link_resolved_and_tagged(
        self, preloader: Preloader, catalog: ContentCatalog
    ) -> None:
        source, metadata = catalog.source_for("coast", Variant.MP4)

        result = await preloader.preload_one(source, metadata)

        assert result.success
        assert result.handle.read() == COAST_BYTES
        # The generic response type is replaced by the variant's type.
        assert result.handle.content_type == "video/mp4"

    @pytest.mark.asyncio
    async def test_cache_hit_skips_download(
        self, cache_store: CacheStore, catalog: ContentCatalog
    ) -> None:
        await cache_store.store("hero_mp4", HERO_MP4, b"cached", content_type="video/mp4")
        downloader = AsyncMock(spec=Downloader)
        preloader = Preloader(cache_store, downloader=downloader, pause_seconds=0)
        progress: list[LoadingProgress] = []
        source, metadata = catalog.source_for("hero", Variant.MP4)

        result = await preloader.preload_one(source, metadata, on_progress=progress.append)

        assert result.success
        assert result.from_cache
        assert result.handle.read() == b"cached"
        downloader.download_payload.assert_not_awaited()
        downloader.download.assert_not_awaited()
        assert len(progress) == 1
        assert progress[0].stage == PreloadStage.COMPLETE
        assert progress[0].percentage == 100

    @pytest.mark.asyncio
    async def test_store_failure_still_completes(self, catalog: ContentCatalog) -> None:
        """Bytes that cannot be persisted are still usable."""
        preloader = Preloader(CacheStore(None), downloader=serve(default_routes()))
        source, metadata = catalog.source_for("hero", Variant.MP4)

        result = await preloader.preload_one(source, metadata)

        assert result.success
        assert not result.from_cache
        assert not result.persisted
        assert result.handle.read() == HERO_BYTES

    @pytest.mark.asyncio
    async def test_http_failure(
        self, cache_store: CacheStore, catalog: ContentCatalog
    ) -> None:
        preloader = Preloader(cache_store, downloader=serve({HERO_MP4: httpx.Response(503)}))
        events: list[PreloadEvent] = []
        preloader.subscribe(events.append, [PreloadEventType.ERROR])
        source, metadata = catalog.source_for("hero", Variant.MP4)

        result = await preloader.preload_one(source, metadata)

        assert not result.success
        assert not result.cancelled
        assert result.failed_stage == PreloadStage.FETCHING
        assert "503" in result.error
        assert result.handle is None
        assert await cache_store.has("hero_mp4", HERO_MP4) is False
        assert len(events) == 1
        assert events[0].result is result

    @pytest.mark.asyncio
    async def test_unresolvable_source(self, cache_store: CacheStore) -> None:
        seen: list[str] = []
        preloader = Preloader(cache_store, downloader=serve({}, seen))
        source = VideoSource(
            id="bad_mp4",
            original_url="https://drive.google.com/drive/my-drive",
            kind=SourceKind.INDIRECT_SHARE,
        )
        metadata = AssetMetadata(id="bad_mp4", label="Bad")

        result = await preloader.preload_one(source, metadata)

        assert not result.success
        assert result.failed_stage == PreloadStage.FETCHING
        assert "file ID" in result.error
        assert seen == []

    @pytest.mark.asyncio
    async def test_cancel_download_mid_transfer(
        self, cache_store: CacheStore, catalog: ContentCatalog
    ) -> None:
        stream = StallingStream()
        preloader = Preloader(
            cache_store, downloader=serve({HERO_MP4: httpx.Response(200, stream=stream)})
        )
        events: list[PreloadEvent] = []
        preloader.subscribe(events.append, [PreloadEventType.CANCELLED, PreloadEventType.ERROR])
        source, metadata = catalog.source_for("hero", Variant.MP4)

        task = asyncio.create_task(preloader.preload_one(source, metadata))
        await asyncio.wait_for(stream.stalled.wait(), timeout=5)
        assert preloader.active_downloads == ["hero_mp4"]
        assert preloader.cancel_download("hero_mp4") is True

        result = await asyncio.wait_for(task, timeout=5)

        assert not result.success
        assert result.cancelled
        assert result.failed_stage == PreloadStage.FETCHING
        assert await cache_store.has("hero_mp4", HERO_MP4) is False
        assert [e.type for e in events] == [PreloadEventType.CANCELLED]
        assert preloader.active_downloads == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_download(self, preloader: Preloader) -> None:
        assert preloader.cancel_download("nothing") is False

    @pytest.mark.asyncio
    async def test_event_sequence(
        self, preloader: Preloader, catalog: ContentCatalog
    ) -> None:
        events: list[PreloadEvent] = []
        preloader.subscribe(events.append)
        source, metadata = catalog.source_for("hero", Variant.MP4)

        await preloader.preload_one(source, metadata)

        types = [e.type for e in events]
        assert types[0] == PreloadEventType.START
        assert types[-1] == PreloadEventType.COMPLETE
        assert set(types[1:-1]) == {PreloadEventType.PROGRESS}


class TestPreloadMany:
    """Tests for batch preloading."""

    @pytest.mark.asyncio
    async def test_batch_with_one_cached_asset(
        self, cache_store: CacheStore, catalog: ContentCatalog
    ) -> None:
        await cache_store.store("hero_mp4", HERO_MP4, b"cached", content_type="video/mp4")
        seen: list[str] = []
        preloader = Preloader(
            cache_store, downloader=serve(default_routes(), seen), pause_seconds=0
        )

        results = await preloader.preload_many(
            catalog.priority_sources(), catalog.metadata_map()
        )

        assert set(results) == {"hero_mp4", "coast_mp4"}
        assert results["hero_mp4"].from_cache
        assert not results["coast_mp4"].from_cache
        assert all(r.success for r in results.values())
        assert not any(HERO_MP4 in url for url in seen)

    @pytest.mark.asyncio
    async def test_missing_metadata_skipped(
        self, preloader: Preloader, catalog: ContentCatalog
    ) -> None:
        metadata = catalog.metadata_map()
        del metadata["coast_mp4"]

        results = await preloader.preload_many(catalog.priority_sources(), metadata)

        assert list(results) == ["hero_mp4"]

    @pytest.mark.asyncio
    async def test_batch_cancel_stops_queue(
        self, preloader: Preloader, cache_store: CacheStore, catalog: ContentCatalog
    ) -> None:
        token = CancellationToken()

        def on_event(event: PreloadEvent) -> None:
            token.cancel("enough")

        preloader.subscribe(on_event, [PreloadEventType.COMPLETE])

        results = await preloader.preload_many(
            catalog.priority_sources(), catalog.metadata_map(), token=token
        )

        assert list(results) == ["hero_mp4"]
        # Work finished before the cancel stays committed.
        assert await cache_store.has("hero_mp4", HERO_MP4)

    @pytest.mark.asyncio
    async def test_items_run_sequentially(
        self, cache_store: CacheStore, catalog: ContentCatalog
    ) -> None:
        preloader = Preloader(
            cache_store, downloader=serve(default_routes()), pause_seconds=0.01
        )
        active: list[str] = []
        overlaps: list[list[str]] = []

        def on_event(event: PreloadEvent) -> None:
            if event.type == PreloadEventType.START:
                active.append(event.asset_id)
                overlaps.append(list(active))
            elif event.type in (PreloadEventType.COMPLETE, PreloadEventType.ERROR):
                active.remove(event.asset_id)

        preloader.subscribe(on_event)

        results = await preloader.preload_many(
            catalog.sources(), catalog.metadata_map()
        )

        assert len(results) == 3
        assert all(len(snapshot) == 1 for snapshot in overlaps)

    @pytest.mark.asyncio
    async def test_shared_handle_table(
        self, cache_store: CacheStore, catalog: ContentCatalog
    ) -> None:
        handles = HandleTable()
        preloader = Preloader(
            cache_store, downloader=serve(default_routes()), handles=handles, pause_seconds=0
        )

        await preloader.preload_many(catalog.priority_sources(), catalog.metadata_map())

        assert sorted(handles.asset_ids()) == ["coast_mp4", "hero_mp4"]

    @pytest.mark.asyncio
    async def test_request_error_fails_item_not_batch(
        self, cache_store: CacheStore, catalog: ContentCatalog
    ) -> None:
        routes = default_routes()

        def handler(request: httpx.Request) -> httpx.Response:
            url = str(request.url)
            if url == HERO_MP4:
                return httpx.Response(302, headers={"location": HERO_MP4})
            return routes[url]

        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), follow_redirects=True, max_redirects=2
        )
        preloader = Preloader(cache_store, downloader=Downloader(client=client), pause_seconds=0)
        errors: list[PreloadEvent] = []
        preloader.subscribe(errors.append, [PreloadEventType.ERROR])

        results = await preloader.preload_many(
            catalog.priority_sources(), catalog.metadata_map()
        )

        assert set(results) == {"hero_mp4", "coast_mp4"}
        assert not results["hero_mp4"].success
        assert results["hero_mp4"].failed_stage == PreloadStage.FETCHING
        assert results["coast_mp4"].success
        assert [e.asset_id for e in errors] == ["hero_mp4"]


class TestLogContext:
    """Tests for the logging context around preload stages."""

    @pytest.mark.asyncio
    async def test_stage_in_log_context(
        self, preloader: Preloader, catalog: ContentCatalog
    ) -> None:
        seen: list[tuple[PreloadStage, dict[str, str]]] = []
        source, metadata = catalog.source_for("hero", Variant.MP4)

        await preloader.preload_one(
            source,
            metadata,
            on_progress=lambda progress: seen.append((progress.stage, current_context())),
        )

        contexts = {stage: ctx for stage, ctx in seen}
        assert contexts[PreloadStage.FETCHING] == {"asset_id": "hero_mp4", "stage": "fetching"}
        assert contexts[PreloadStage.CACHING]["stage"] == "caching"
        assert "stage" not in contexts[PreloadStage.PROCESSING]
        assert "stage" not in contexts[PreloadStage.COMPLETE]
        assert current_context() == {}
