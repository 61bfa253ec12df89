"""Tests for avatars module."""

import base64
from pathlib import Path
from unittest.mock import MagicMock

import requests

from prbar.avatars import AvatarCache, sized_url


class TestSizedUrl:
    """Tests for sized_url."""

    def test_adds_size(self) -> None:
        """Should request a small image."""
        assert sized_url("https://avatars.example/u/1", 20) == "https://avatars.example/u/1?s=20"
        assert sized_url("https://avatars.example/u/1?v=4", 20) == (
            "https://avatars.example/u/1?v=4&s=20"
        )

    def test_keeps_existing_size(self) -> None:
        """Should not override a size already in the URL."""
        assert sized_url("https://avatars.example/u/1?size=40", 20).endswith("size=40")


class TestAvatarCache:
    """Tests for AvatarCache."""

    def test_downloads_once(self, tmp_path: Path) -> None:
        """Should download on first use and serve from disk afterwards."""
        session = MagicMock()
        session.get.return_value.content = b"png-bytes"
        cache = AvatarCache(tmp_path, session=session)

        first = cache.get_b64("alice", "https://avatars.example/u/1")
        second = cache.get_b64("alice", "https://avatars.example/u/1")

        assert first == second == base64.b64encode(b"png-bytes").decode("ascii")
        session.get.assert_called_once_with("https://avatars.example/u/1?s=20", timeout=10)
        assert cache.path("alice").read_bytes() == b"png-bytes"

    def test_download_failure_is_empty(self, tmp_path: Path) -> None:
        """Should fall back to no image when the download fails."""
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("offline")
        cache = AvatarCache(tmp_path, session=session)

        assert cache.get_b64("alice", "https://avatars.example/u/1") == ""
        assert not cache.path("alice").exists()

    def test_no_url_is_empty(self, tmp_path: Path) -> None:
        """Should not try to download without a URL."""
        session = MagicMock()

        assert AvatarCache(tmp_path, session=session).get_b64("alice", "") == ""
        session.get.assert_not_called()

    def test_unsafe_login_is_sanitized(self, tmp_path: Path) -> None:
        """Should keep cache files inside the cache directory."""
        path = AvatarCache(tmp_path).path("../evil")

        assert path.parent == tmp_path
        assert path.name == ".._evil-20.png"
