"""
Persistent cache storage.

- CacheStore: SQLite-backed keyed blob store with LRU eviction
"""

from mediacache.store.cache_store import CacheStore

__all__ = ["CacheStore"]
