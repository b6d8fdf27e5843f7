"""
Turns video source descriptors into fetchable direct URLs.

Direct sources pass through unchanged. Share links (Google Drive style) carry
the file identifier in one of several URL shapes and are rewritten to the
provider's direct-download endpoint.
"""

from __future__ import annotations

import re
from urllib.parse import parse_qs, urlparse

from mediacache.exceptions import UnresolvableSource
from mediacache.logging import get_logger
from mediacache.types import SourceKind, VideoSource

logger = get_logger(__name__)

SHARE_HOST_PATTERNS = (
    re.compile(r"(^|\.)drive\.google\.com$"),
    re.compile(r"(^|\.)docs\.google\.com$"),
    re.compile(r"(^|\.)googleapis\.com$"),
)

# Path-segment forms; the query-parameter form (?id=...) is handled separately.
FILE_ID_PATH_PATTERNS = (
    re.compile(r"/file/d/([A-Za-z0-9_-]+)"),
    re.compile(r"/folders/([A-Za-z0-9_-]+)"),
)

FILE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

DIRECT_DOWNLOAD_TEMPLATE = "https://drive.google.com/uc?export=download&id={file_id}"


def is_share_url(url: str) -> bool:
    """Whether a URL points at a known share-link provider."""
    host = (urlparse(url).hostname or "").lower()
    return any(pattern.search(host) for pattern in SHARE_HOST_PATTERNS)


def extract_file_id(url: str) -> str | None:
    """Pull the embedded file identifier out of a share link."""
    parsed = urlparse(url)

    for pattern in FILE_ID_PATH_PATTERNS:
        match = pattern.search(parsed.path)
        if match:
            return match.group(1)

    for value in parse_qs(parsed.query).get("id", []):
        if FILE_ID_RE.match(value):
            return value

    return None


class SourceResolver:
    """Resolves VideoSource descriptors to direct URLs."""

    def __init__(self, direct_template: str = DIRECT_DOWNLOAD_TEMPLATE) -> None:
        self.direct_template = direct_template

    def resolve(self, source: VideoSource) -> str:
        """Return the URL the downloader should fetch.

        Raises:
            UnresolvableSource: If a share link has no recognizable file ID.
        """
        if source.kind is SourceKind.DIRECT:
            return source.original_url

        file_id = extract_file_id(source.original_url)
        if not file_id:
            raise UnresolvableSource(
                "Cannot extract file ID from share link",
                context={"asset_id": source.id, "url": source.original_url},
            )

        direct_url = self.direct_template.format(file_id=file_id)
        logger.debug(
            "Rewrote share link",
            asset_id=source.id,
            original=source.original_url,
            direct=direct_url,
        )
        return direct_url
