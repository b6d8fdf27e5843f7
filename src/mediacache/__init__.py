"""
Local media cache.

A persistent, size-bounded store for downloaded video assets paired with a
preloader that fetches assets from remote sources and populates the store.
"""

__version__ = "0.3.0"
