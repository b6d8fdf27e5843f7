"""
Streamed, cancellable HTTP downloads into memory.

The response is read in chunks with a progress callback after each chunk,
then assembled into one contiguous buffer. A CancellationToken aborts the
in-flight request; transient transport errors are retried with exponential
backoff, HTTP status failures are not.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mediacache import __version__
from mediacache.config import Settings
from mediacache.download.cancellation import CancellationToken
from mediacache.exceptions import DownloadCancelled, DownloadFailed
from mediacache.logging import get_logger
from mediacache.types import FetchedPayload

logger = get_logger(__name__)

USER_AGENT = f"media-cache/{__version__}"
ACCEPT = "video/webm,video/mp4,video/*;q=0.9,*/*;q=0.5"

REQUEST_TIMEOUT = 60.0
CHUNK_SIZE = 256 * 1024

ProgressCallback = Callable[[int, int], None]


def _content_length(headers: httpx.Headers) -> int:
    """Declared body length, or 0 when absent or unparsable."""
    try:
        return max(0, int(headers.get("content-length", 0)))
    except ValueError:
        return 0


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Download attempt failed, retrying",
        attempt=retry_state.attempt_number,
        error=str(error),
    )


class Downloader:
    """Fetches remote resources into memory.

    Args:
        timeout: Request timeout in seconds.
        max_attempts: Attempts on transport errors (connect/read failures).
        chunk_size: Size of streamed reads.
        user_agent: User-Agent header value.
        client: Optional preconfigured client; it is not closed by close().
    """

    def __init__(
        self,
        timeout: float = REQUEST_TIMEOUT,
        max_attempts: int = 3,
        chunk_size: int = CHUNK_SIZE,
        user_agent: str = USER_AGENT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.chunk_size = chunk_size
        self.user_agent = user_agent
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings) -> Downloader:
        return cls(
            timeout=settings.DOWNLOAD_TIMEOUT_SECONDS,
            max_attempts=settings.DOWNLOAD_MAX_ATTEMPTS,
            chunk_size=settings.DOWNLOAD_CHUNK_SIZE,
            user_agent=settings.USER_AGENT,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": self.user_agent},
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this downloader created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def download(
        self,
        url: str,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> bytes:
        """Download a resource and return its bytes.

        Raises:
            DownloadCancelled: If the token fired before completion.
            DownloadFailed: On a non-2xx response or exhausted retries.
        """
        payload = await self.download_payload(url, token, on_progress)
        return payload.content

    async def download_payload(
        self,
        url: str,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> FetchedPayload:
        """Like download(), also returning the response content type."""
        token = token or CancellationToken()
        if token.cancelled:
            raise DownloadCancelled("Download cancelled before start", context={"url": url})

        fetch = asyncio.ensure_future(self._fetch_with_retries(url, token, on_progress))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {fetch, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            fetch.cancel()
            cancelled.cancel()
            raise

        if fetch in done:
            cancelled.cancel()
            return fetch.result()

        # The token won the race: abort the request and wait for it to unwind.
        fetch.cancel()
        await asyncio.gather(fetch, return_exceptions=True)
        logger.info("Download cancelled", url=url, reason=token.reason)
        raise DownloadCancelled("Download was cancelled", context={"url": url})

    async def _fetch_with_retries(
        self,
        url: str,
        token: CancellationToken,
        on_progress: ProgressCallback | None,
    ) -> FetchedPayload:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TransportError),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    return await self._stream(url, token, on_progress)
        except httpx.TransportError as e:
            raise DownloadFailed(
                "Network error while downloading",
                context={"url": url, "error": str(e)},
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            # Redirect loops, undecodable bodies and malformed URLs are not retried.
            raise DownloadFailed(
                f"Request failed: {type(e).__name__}",
                context={"url": url, "error": str(e)},
            ) from e
        raise DownloadFailed("Download did not complete", context={"url": url})

    async def _stream(
        self,
        url: str,
        token: CancellationToken,
        on_progress: ProgressCallback | None,
    ) -> FetchedPayload:
        client = await self._get_client()

        async with client.stream("GET", url, headers={"Accept": ACCEPT}) as response:
            if not response.is_success:
                raise DownloadFailed(
                    f"HTTP {response.status_code}: {response.reason_phrase}",
                    status_code=response.status_code,
                    context={"url": url},
                )

            total = _content_length(response.headers)
            buffer = bytearray()
            async for chunk in response.aiter_bytes(self.chunk_size):
                if token.cancelled:
                    raise DownloadCancelled("Download was cancelled", context={"url": url})
                buffer.extend(chunk)
                if on_progress:
                    on_progress(len(buffer), total)

            content_type = response.headers.get("content-type")

        logger.debug("Downloaded", url=url, size=len(buffer), declared=total)
        return FetchedPayload(url=url, content=bytes(buffer), content_type=content_type)
