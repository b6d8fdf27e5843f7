"""
Persistent, size-bounded store for downloaded media.

One SQLite table keyed by asset_id holds the payload blob next to its
metadata, with indexes on the source fingerprint and on last access time.
Capacity is enforced before a new entry is admitted by evicting the least
recently accessed entries.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite
import orjson

from mediacache.events import EventHub, Listener, Subscription
from mediacache.exceptions import (
    EntryTooLarge,
    SchemaVersionMismatch,
    StoreOperationFailed,
    StoreUnavailable,
)
from mediacache.logging import get_logger
from mediacache.types import (
    CacheConfig,
    CacheEntry,
    CacheEvent,
    CacheEventType,
    CacheStats,
    fingerprint_url,
    from_micros,
)

logger = get_logger(__name__)

TABLE = "videos"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Errors that mean "this operation failed", not "the program is broken".
BACKEND_ERRORS = (aiosqlite.Error, OSError, orjson.JSONDecodeError)


class CacheStore:
    """Keyed blob storage with metadata, LRU eviction and change events.

    Every public operation except initialize() degrades instead of raising:
    backend failures become an ``error`` event and an absent result.

    Args:
        cache_dir: Directory for the database file. None means no
            persistent backend is available in this environment.
        config: Budgets, schema version and namespace.
        clock: Wall clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        cache_dir: str | Path | None,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CacheConfig()
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self._clock = clock
        self._db: aiosqlite.Connection | None = None
        self._init_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()
        self._last_stamp = 0
        self._hits = 0
        self._misses = 0
        self.events: EventHub[CacheEvent] = EventHub(
            "cache-store", type_of=lambda event: event.type.value
        )

    @property
    def db_path(self) -> Path | None:
        if self.cache_dir is None:
            return None
        return self.cache_dir / f"{self.config.store_namespace}.db"

    @property
    def is_ready(self) -> bool:
        return self._db is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the store and run startup cleanup.

        Concurrent and repeated callers share one initialization. A failed
        initialization stays failed for the lifetime of this instance.

        Raises:
            StoreUnavailable: If no persistent backend can be opened.
        """
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        await asyncio.shield(self._init_task)

    async def _initialize(self) -> None:
        db_path = self.db_path
        if db_path is None:
            raise StoreUnavailable("No persistent cache directory configured")

        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(db_path)
        except BACKEND_ERRORS as e:
            raise StoreUnavailable(
                "Failed to open cache database", context={"path": str(db_path)}
            ) from e

        try:
            db.row_factory = aiosqlite.Row
            await self._create_schema(db)
            self._db = db
            await self._cleanup_on_open()
        except BACKEND_ERRORS as e:
            self._db = None
            await db.close()
            raise StoreUnavailable(
                "Failed to prepare cache database", context={"path": str(db_path)}
            ) from e

        logger.info(
            "Cache store initialized",
            path=str(db_path),
            max_bytes=self.config.max_cache_bytes,
            max_entries=self.config.max_entry_count,
        )

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.execute(f"""
            CREATE TABLE IF NOT EXISTS {TABLE} (
                asset_id TEXT PRIMARY KEY,
                source_url TEXT NOT NULL,
                source_fingerprint TEXT NOT NULL,
                payload BLOB NOT NULL,
                content_type TEXT NOT NULL,
                metadata TEXT NOT NULL,
                cached_at INTEGER NOT NULL,
                last_accessed_at INTEGER NOT NULL,
                size_bytes INTEGER NOT NULL,
                schema_version TEXT NOT NULL
            )
        """)
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_fingerprint "
            f"ON {TABLE}(source_fingerprint)"
        )
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_last_accessed "
            f"ON {TABLE}(last_accessed_at)"
        )
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_cached_at ON {TABLE}(cached_at)"
        )
        await db.commit()

    async def _cleanup_on_open(self) -> None:
        """Purge other schema versions, then trim to the count and byte budgets."""
        async with self._transaction() as db:
            async with db.execute(
                f"SELECT asset_id, schema_version FROM {TABLE} WHERE schema_version != ?",
                (self.config.schema_version,),
            ) as cursor:
                stale = await cursor.fetchall()
            for row in stale:
                mismatch = SchemaVersionMismatch(
                    "Purging entry from another schema version",
                    context={
                        "asset_id": row["asset_id"],
                        "found": row["schema_version"],
                        "expected": self.config.schema_version,
                    },
                )
                logger.debug(str(mismatch))
            await db.execute(
                f"DELETE FROM {TABLE} WHERE schema_version != ?",
                (self.config.schema_version,),
            )

            async with db.execute(
                f"SELECT asset_id, size_bytes FROM {TABLE} "
                "ORDER BY last_accessed_at DESC, cached_at DESC"
            ) as cursor:
                newest_first = await cursor.fetchall()

            keep_bytes = 0
            excess: list[str] = []
            for index, row in enumerate(newest_first):
                over_count = index >= self.config.max_entry_count
                over_bytes = keep_bytes + row["size_bytes"] > self.config.max_cache_bytes
                if over_count or over_bytes:
                    excess.append(row["asset_id"])
                else:
                    keep_bytes += row["size_bytes"]
            await db.executemany(
                f"DELETE FROM {TABLE} WHERE asset_id = ?", [(a,) for a in excess]
            )

            async with db.execute(f"SELECT MAX(last_accessed_at) FROM {TABLE}") as cursor:
                row = await cursor.fetchone()
            self._last_stamp = max(self._last_stamp, row[0] or 0)

        if stale or excess:
            logger.info(
                "Startup cleanup purged entries",
                schema_mismatch=len(stale),
                over_budget=len(excess),
            )

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def store(
        self,
        asset_id: str,
        source_url: str,
        payload: bytes,
        metadata: Mapping[str, Any] | None = None,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> bool:
        """Admit an entry, evicting least recently accessed entries first.

        Returns:
            True if the entry was written, False on any failure.
        """
        size = len(payload)
        if size > self.config.max_cache_bytes:
            self._fail(
                EntryTooLarge(
                    "Payload exceeds the whole cache budget",
                    asset_id=asset_id,
                    context={"size": size, "budget": self.config.max_cache_bytes},
                )
            )
            return False

        try:
            db = await self._connection()
        except StoreUnavailable:
            return False

        fingerprint = fingerprint_url(source_url)
        try:
            # Eviction and write are serialized against other writers so the
            # budget cannot be overrun by interleaved store() calls.
            async with self._write_lock:
                await self._make_room(db, asset_id, size)
                stamp = self._next_stamp()
                async with self._transaction() as tx:
                    await tx.execute(
                        f"""
                        INSERT OR REPLACE INTO {TABLE} (
                            asset_id, source_url, source_fingerprint, payload,
                            content_type, metadata, cached_at, last_accessed_at,
                            size_bytes, schema_version
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            asset_id,
                            source_url,
                            fingerprint,
                            payload,
                            content_type,
                            orjson.dumps(dict(metadata or {})).decode("utf-8"),
                            stamp,
                            stamp,
                            size,
                            self.config.schema_version,
                        ),
                    )
        except BACKEND_ERRORS as e:
            self._fail(StoreOperationFailed("Failed to store asset", asset_id=asset_id, cause=e))
            return False

        self._emit(CacheEventType.STORED, asset_id, size_bytes=size, url=source_url)
        logger.info("Stored asset", asset_id=asset_id, size=size)
        return True

    async def _make_room(self, db: aiosqlite.Connection, asset_id: str, size: int) -> None:
        """Evict the oldest-accessed prefix until the new entry fits both budgets."""
        async with db.execute(
            f"SELECT COALESCE(SUM(size_bytes), 0), COUNT(*) FROM {TABLE} WHERE asset_id != ?",
            (asset_id,),
        ) as cursor:
            row = await cursor.fetchone()
        current_bytes, current_count = row[0], row[1]

        bytes_needed = current_bytes + size - self.config.max_cache_bytes
        entries_needed = current_count + 1 - self.config.max_entry_count
        if bytes_needed <= 0 and entries_needed <= 0:
            return

        victims: list[tuple[str, int]] = []
        freed = 0
        async with db.execute(
            f"SELECT asset_id, size_bytes FROM {TABLE} WHERE asset_id != ? "
            "ORDER BY last_accessed_at ASC, cached_at ASC",
            (asset_id,),
        ) as cursor:
            async for candidate in cursor:
                if freed >= bytes_needed and len(victims) >= entries_needed:
                    break
                victims.append((candidate["asset_id"], candidate["size_bytes"]))
                freed += candidate["size_bytes"]

        async with self._transaction() as tx:
            await tx.executemany(
                f"DELETE FROM {TABLE} WHERE asset_id = ?", [(v,) for v, _ in victims]
            )

        for victim, victim_size in victims:
            self._emit(CacheEventType.EVICTED, victim, size_bytes=victim_size)
        logger.info(
            "Evicted least recently accessed entries",
            count=len(victims),
            freed_bytes=freed,
            for_asset=asset_id,
        )

    async def lookup(self, asset_id: str, source_url: str) -> CacheEntry | None:
        """Find a valid entry and mark it accessed.

        An entry whose fingerprint no longer matches ``source_url`` is
        removed and reported as a miss with reason ``source-changed``.
        """
        try:
            db = await self._connection()
        except StoreUnavailable:
            return None

        try:
            async with db.execute(
                f"SELECT * FROM {TABLE} WHERE asset_id = ?", (asset_id,)
            ) as cursor:
                row = await cursor.fetchone()

            if row is None:
                self._record_miss(asset_id, "absent", source_url)
                return None

            if row["source_fingerprint"] != fingerprint_url(source_url):
                logger.info(
                    "Source changed, dropping cached copy",
                    asset_id=asset_id,
                    url=source_url,
                )
                async with self._transaction() as tx:
                    await tx.execute(f"DELETE FROM {TABLE} WHERE asset_id = ?", (asset_id,))
                self._record_miss(asset_id, "source-changed", source_url)
                return None

            stamp = self._next_stamp()
            async with self._transaction() as tx:
                await tx.execute(
                    f"UPDATE {TABLE} SET last_accessed_at = ? WHERE asset_id = ?",
                    (stamp, asset_id),
                )
            entry = self._row_to_entry(row, last_accessed=stamp)
        except BACKEND_ERRORS as e:
            self._fail(StoreOperationFailed("Failed to read asset", asset_id=asset_id, cause=e))
            return None

        self._hits += 1
        self._emit(CacheEventType.HIT, asset_id, size_bytes=entry.size_bytes, url=source_url)
        logger.debug("Cache hit", asset_id=asset_id, size=entry.size_bytes)
        return entry

    async def get(self, asset_id: str, source_url: str) -> bytes | None:
        """Return the cached payload, or None on a miss or failure."""
        entry = await self.lookup(asset_id, source_url)
        return entry.payload if entry else None

    async def has(self, asset_id: str, source_url: str) -> bool:
        """Presence check with the fingerprint rule; does not touch access time."""
        try:
            db = await self._connection()
            async with db.execute(
                f"SELECT source_fingerprint FROM {TABLE} WHERE asset_id = ?", (asset_id,)
            ) as cursor:
                row = await cursor.fetchone()
        except StoreUnavailable:
            return False
        except BACKEND_ERRORS as e:
            self._fail(StoreOperationFailed("Failed to check asset", asset_id=asset_id, cause=e))
            return False
        return row is not None and row["source_fingerprint"] == fingerprint_url(source_url)

    async def remove(self, asset_id: str) -> bool:
        """Delete one entry. Returns whether an entry existed."""
        try:
            db = await self._connection()
        except StoreUnavailable:
            return False
        try:
            async with self._transaction() as tx:
                cursor = await tx.execute(f"DELETE FROM {TABLE} WHERE asset_id = ?", (asset_id,))
                removed = cursor.rowcount > 0
                await cursor.close()
        except BACKEND_ERRORS as e:
            self._fail(StoreOperationFailed("Failed to remove asset", asset_id=asset_id, cause=e))
            return False

        if removed:
            self._emit(CacheEventType.REMOVED, asset_id)
            logger.info("Removed asset", asset_id=asset_id)
        return removed

    async def clear(self) -> bool:
        """Delete every entry, publishing a single ``cleared`` event."""
        try:
            db = await self._connection()
        except StoreUnavailable:
            return False
        try:
            async with self._transaction() as tx:
                await tx.execute(f"DELETE FROM {TABLE}")
        except BACKEND_ERRORS as e:
            self._fail(StoreOperationFailed("Failed to clear cache", cause=e))
            return False

        self._emit(CacheEventType.CLEARED, None)
        logger.info("Cleared cache")
        return True

    async def stats(self) -> CacheStats:
        """Totals and cached_at range; zeros when empty or unavailable."""
        empty = CacheStats(hits=self._hits, misses=self._misses)
        try:
            db = await self._connection()
            async with db.execute(
                f"SELECT COALESCE(SUM(size_bytes), 0), COUNT(*), "
                f"MIN(cached_at), MAX(cached_at) FROM {TABLE}"
            ) as cursor:
                row = await cursor.fetchone()
        except StoreUnavailable:
            return empty
        except BACKEND_ERRORS as e:
            self._fail(StoreOperationFailed("Failed to compute cache stats", cause=e))
            return empty

        total_bytes, count, oldest, newest = row[0], row[1], row[2], row[3]
        return CacheStats(
            total_bytes=total_bytes,
            entry_count=count,
            oldest_cached_at=from_micros(oldest) if oldest is not None else None,
            newest_cached_at=from_micros(newest) if newest is not None else None,
            hits=self._hits,
            misses=self._misses,
        )

    async def asset_ids(self) -> list[str]:
        """All stored asset IDs, least recently accessed first."""
        try:
            db = await self._connection()
            async with db.execute(
                f"SELECT asset_id FROM {TABLE} ORDER BY last_accessed_at ASC, cached_at ASC"
            ) as cursor:
                rows = await cursor.fetchall()
        except StoreUnavailable:
            return []
        except BACKEND_ERRORS as e:
            self._fail(StoreOperationFailed("Failed to list assets", cause=e))
            return []
        return [row["asset_id"] for row in rows]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(
        self,
        listener: Listener[CacheEvent],
        types: list[CacheEventType] | None = None,
    ) -> Subscription[CacheEvent]:
        return self.events.subscribe(listener, types)

    def unsubscribe(self, listener: Listener[CacheEvent]) -> bool:
        return self.events.unsubscribe(listener)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _connection(self) -> aiosqlite.Connection:
        await self.initialize()
        if self._db is None:
            raise StoreUnavailable("Cache store is closed")
        return self._db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Commit on success, roll back on failure."""
        db = self._db
        if db is None:
            raise StoreUnavailable("Cache store is closed")
        try:
            yield db
            await db.commit()
        except BaseException:
            await db.rollback()
            raise

    def _next_stamp(self) -> int:
        """Strictly increasing microsecond timestamp for this store."""
        now = int(self._clock() * 1_000_000)
        self._last_stamp = max(now, self._last_stamp + 1)
        return self._last_stamp

    def _record_miss(self, asset_id: str, reason: str, url: str) -> None:
        self._misses += 1
        self._emit(CacheEventType.MISS, asset_id, reason=reason, url=url)
        logger.debug("Cache miss", asset_id=asset_id, reason=reason)

    def _fail(self, error: StoreOperationFailed) -> None:
        logger.warning(
            error.message,
            asset_id=error.asset_id,
            cause=repr(error.cause) if error.cause else None,
        )
        self._emit(CacheEventType.ERROR, error.asset_id, error=error)

    def _emit(self, event_type: CacheEventType, asset_id: str | None, **data: Any) -> None:
        self.events.emit(CacheEvent(type=event_type, asset_id=asset_id, data=data))

    def _row_to_entry(self, row: aiosqlite.Row, last_accessed: int | None = None) -> CacheEntry:
        return CacheEntry(
            asset_id=row["asset_id"],
            source_url=row["source_url"],
            source_fingerprint=row["source_fingerprint"],
            payload=bytes(row["payload"]),
            content_type=row["content_type"],
            metadata=orjson.loads(row["metadata"]),
            cached_at=from_micros(row["cached_at"]),
            last_accessed_at=from_micros(last_accessed or row["last_accessed_at"]),
            size_bytes=row["size_bytes"],
            schema_version=row["schema_version"],
        )
