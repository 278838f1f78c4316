"""Tests for util.py."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import io
import urllib.error

import pytest

import util


def _fake_request(url: str) -> Any:
    """Create a minimal request object for testing."""

    class _Req:
        full_url = url
        headers: dict[str, str] = {}
        data = None
        origin_req_host = "original.com"

        def get_method(self) -> str:
            return "GET"

    return _Req()


class TestSafeRedirectHandler:
    @pytest.mark.parametrize("newurl", ["http://mirror.example/a.torrent", "https://mirror.example/a.torrent"])
    def test_allows_http_redirects(self, newurl):
        handler = util._SafeRedirectHandler()
        req = _fake_request("http://tracker.example/a.torrent")
        result = handler.redirect_request(req, fp=None, code=302, msg="Found", headers={}, newurl=newurl)
        assert result is not None

    @pytest.mark.parametrize(
        "newurl",
        ["file:///etc/passwd", "data:text/html,<script>alert(1)</script>", "magnet:?xt=urn:btih:abc"],
    )
    def test_rejects_other_schemes(self, newurl):
        handler = util._SafeRedirectHandler()
        req = _fake_request("http://tracker.example/a.torrent")
        with pytest.raises(urllib.error.URLError, match="Unsafe redirect scheme"):
            handler.redirect_request(req, fp=None, code=302, msg="Found", headers={}, newurl=newurl)


class TestSafeUrlopen:
    def test_rejects_non_http_scheme(self):
        with pytest.raises(urllib.error.URLError, match="Unsafe URL scheme"):
            util.safe_urlopen("file:///etc/passwd")


class TestFetchBytes:
    def _response(self, data: bytes) -> MagicMock:
        resp = MagicMock()
        resp.__enter__.return_value = io.BytesIO(data)
        return resp

    def test_returns_body(self):
        with patch("util.safe_urlopen", return_value=self._response(b"d4:infoe")):
            assert util.fetch_bytes("https://example.com/a.torrent") == b"d4:infoe"

    def test_rejects_oversized_body(self):
        with patch("util.safe_urlopen", return_value=self._response(b"x" * 11)):
            with pytest.raises(urllib.error.URLError, match="larger than 10"):
                util.fetch_bytes("https://example.com/a.torrent", limit=10)


class TestRemoveTree:
    def test_removes_nested_dir(self, tmp_path: Path):
        d = tmp_path / "session"
        (d / "sub").mkdir(parents=True)
        (d / "sub" / "segment-00000.ts").write_bytes(b"x")
        assert util.remove_tree(d) is True
        assert not d.exists()

    def test_missing_dir_is_ok(self, tmp_path: Path):
        assert util.remove_tree(tmp_path / "gone") is True

    def test_failure_is_logged_not_raised(self, tmp_path: Path):
        d = tmp_path / "session"
        d.mkdir()
        with patch("util.shutil.rmtree", side_effect=PermissionError("denied")):
            assert util.remove_tree(d) is False
        assert d.exists()


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
