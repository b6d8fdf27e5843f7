"""
Source descriptors and URL resolution.

- SourceResolver: Rewrites share links into direct byte-stream URLs
- ContentCatalog: Configured list of logical assets and their variants
"""

from mediacache.sources.catalog import ContentCatalog, ContentItem
from mediacache.sources.resolver import SourceResolver

__all__ = ["ContentCatalog", "ContentItem", "SourceResolver"]
