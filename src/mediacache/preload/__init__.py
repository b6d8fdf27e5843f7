"""
Preload orchestration: cache check, resolve, download, store, hand out.
"""

from mediacache.preload.preloader import Preloader
from mediacache.preload.state import PreloadAttempt

__all__ = ["PreloadAttempt", "Preloader"]
