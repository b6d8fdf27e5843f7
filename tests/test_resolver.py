"""
Tests for source resolution.
"""

from __future__ import annotations

import pytest

from mediacache.exceptions import UnresolvableSource
from mediacache.sources.resolver import SourceResolver, extract_file_id, is_share_url
from mediacache.types import SourceKind, VideoSource


def share(url: str) -> VideoSource:
    return VideoSource(id="clip_mp4", original_url=url, kind=SourceKind.INDIRECT_SHARE)


class TestResolve:
    """Tests for SourceResolver.resolve()."""

    def test_direct_url_unchanged(self) -> None:
        url = "https://cdn.example.com/videos/clip.mp4?token=abc"
        source = VideoSource(id="clip_mp4", original_url=url)

        assert SourceResolver().resolve(source) == url

    @pytest.mark.parametrize(
        "url",
        [
            "https://drive.google.com/file/d/1AbC_d-E/view?usp=sharing",
            "https://drive.google.com/open?id=1AbC_d-E",
            "https://drive.google.com/uc?id=1AbC_d-E&export=view",
            "https://drive.google.com/drive/folders/1AbC_d-E",
        ],
    )
    def test_share_link_shapes(self, url: str) -> None:
        resolved = SourceResolver().resolve(share(url))

        assert resolved == "https://drive.google.com/uc?export=download&id=1AbC_d-E"

    def test_unknown_shape_raises(self) -> None:
        with pytest.raises(UnresolvableSource) as exc_info:
            SourceResolver().resolve(share("https://drive.google.com/drive/my-drive"))

        assert exc_info.value.context["asset_id"] == "clip_mp4"
        assert "my-drive" in exc_info.value.context["url"]

    def test_custom_template(self) -> None:
        resolver = SourceResolver(direct_template="https://mirror.example.com/{file_id}")

        resolved = resolver.resolve(share("https://drive.google.com/file/d/XYZ/view"))

        assert resolved == "https://mirror.example.com/XYZ"


class TestUrlHelpers:
    """Tests for the share-link helpers."""

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("https://drive.google.com/file/d/abc/view", True),
            ("https://docs.google.com/uc?id=abc", True),
            ("https://www.googleapis.com/drive/v3/files/abc", True),
            ("https://cdn.example.com/a.mp4", False),
            ("https://drive.google.com.evil.example/file/d/abc", False),
            ("not a url", False),
        ],
    )
    def test_is_share_url(self, url: str, expected: bool) -> None:
        assert is_share_url(url) is expected

    def test_extract_file_id_rejects_bad_query_value(self) -> None:
        assert extract_file_id("https://drive.google.com/open?id=../../etc") is None

    def test_extract_file_id_prefers_path(self) -> None:
        url = "https://drive.google.com/file/d/PATHID/view?id=QUERYID"

        assert extract_file_id(url) == "PATHID"
