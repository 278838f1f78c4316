"""Shared utilities."""

from __future__ import annotations

from typing import Any

import logging
import pathlib
import shutil
import urllib.error
import urllib.parse
import urllib.request


log = logging.getLogger(__name__)

_MAX_TORRENT_BYTES = 10 * 1024 * 1024


class _SafeRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Redirect handler that only allows http/https schemes."""

    def redirect_request(
        self,
        req: urllib.request.Request,
        fp: Any,
        code: int,
        msg: str,
        headers: Any,
        newurl: str,
    ) -> urllib.request.Request | None:
        parsed = urllib.parse.urlparse(newurl)
        if parsed.scheme not in ("http", "https"):
            raise urllib.error.URLError(f"Unsafe redirect scheme: {parsed.scheme}")
        return super().redirect_request(req, fp, code, msg, headers, newurl)


def safe_urlopen(url: str, timeout: int = 30) -> Any:
    """Open URL with safe redirect handling."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise urllib.error.URLError(f"Unsafe URL scheme: {parsed.scheme}")
    opener = urllib.request.build_opener(_SafeRedirectHandler())
    return opener.open(url, timeout=timeout)


def fetch_bytes(url: str, timeout: int = 30, limit: int = _MAX_TORRENT_BYTES) -> bytes:
    """Fetch a small http(s) resource (e.g. a .torrent file), capped at `limit` bytes."""
    with safe_urlopen(url, timeout=timeout) as resp:
        data = resp.read(limit + 1)
    if len(data) > limit:
        raise urllib.error.URLError(f"Response larger than {limit} bytes")
    return data


def remove_tree(path: str | pathlib.Path) -> bool:
    """Recursively delete a directory. Logs failures instead of raising.

    Returns True if the directory is gone afterwards.
    """
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return True
    except OSError as e:
        log.warning("Failed to remove %s: %s", path, e)
        return not pathlib.Path(path).exists()
    return True
