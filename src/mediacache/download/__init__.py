"""
Streamed, cancellable downloads.
"""

from mediacache.download.cancellation import CancellationToken
from mediacache.download.downloader import Downloader

__all__ = ["CancellationToken", "Downloader"]
