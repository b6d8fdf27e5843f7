"""
Exception hierarchy for the media cache.

All exceptions inherit from MediaCacheError, which carries optional
structured context for logging. Store-level failures are normally caught
inside CacheStore and reported through the ``error`` event; only
initialization failures propagate to callers.
"""

from __future__ import annotations

from typing import Any


class MediaCacheError(Exception):
    """Base exception for all media cache errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(MediaCacheError):
    """Raised when cache configuration is invalid."""

    pass


class StoreUnavailable(MediaCacheError):
    """Raised when no persistent backend can be opened.

    Fatal to caching only. Callers fall back to cache-less operation.
    """

    pass


class StoreOperationFailed(MediaCacheError):
    """A backend error on one store operation.

    Context includes:
        - asset_id: The asset the operation was for
        - operation: The store method that failed
    """

    def __init__(
        self,
        message: str,
        asset_id: str | None = None,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = {"asset_id": asset_id, **(context or {})}
        super().__init__(message, ctx)
        self.asset_id = asset_id
        self.cause = cause


class EntryTooLarge(StoreOperationFailed):
    """A payload is larger than the whole byte budget and cannot be admitted."""

    pass


class SchemaVersionMismatch(MediaCacheError):
    """An entry was written by an incompatible store version.

    Only raised internally during startup cleanup; never surfaced.
    """

    pass


class UnresolvableSource(MediaCacheError):
    """A share-link source did not match any known URL shape."""

    pass


class DownloadFailed(MediaCacheError):
    """A download ended with a non-success response or a network error.

    Context includes:
        - url: The URL being fetched
        - status_code: HTTP status code, None for transport errors
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, {"status_code": status_code, **(context or {})})
        self.status_code = status_code


class DownloadCancelled(MediaCacheError):
    """A download was cancelled through its cancellation token."""

    pass


class IllegalStateTransition(MediaCacheError):
    """A preload attempt tried to move between incompatible states."""

    pass


class HandleReleasedError(MediaCacheError):
    """A local handle was used after it had been released."""

    pass


class UnknownAssetError(MediaCacheError):
    """The content catalog has no entry for a logical asset/variant."""

    pass
