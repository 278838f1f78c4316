"""Test utilities: pytest runner, fake torrent client, stand-in transcoder commands."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import asyncio
import pathlib
import sys
import threading

from errors import InvalidInputError
from torrent import TorrentFile


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )


def media_file(name: str = "movie.mkv", length: int = 10_000_000, index: int = 0) -> TorrentFile:
    return TorrentFile(index=index, name=name, path=name, length=length)


class FakeDownload:
    """In-memory stand-in for torrent.Download."""

    def __init__(
        self,
        files: list[TorrentFile] | None = None,
        downloaded: int = 0,
        complete: bool = False,
        metadata: bool = True,
        data: bytes = b"fake media bytes",
        release: threading.Event | None = None,
        endless: bool = False,
    ) -> None:
        self._files = [media_file()] if files is None else files
        self.downloaded = downloaded
        self.complete = complete
        self.metadata = metadata
        self.data = data
        self.release = release  # data is withheld until this is set
        self.endless = endless  # keep the stream open after the data, like a live torrent
        self.selected: TorrentFile | None = None
        self.destroy_calls = 0

    def has_metadata(self) -> bool:
        return self.metadata

    def files(self) -> list[TorrentFile]:
        return list(self._files)

    def select(self, file: TorrentFile) -> None:
        self.selected = file

    def downloaded_bytes(self, file: TorrentFile) -> int:
        return self.downloaded

    def is_complete(self) -> bool:
        return self.complete

    def progress(self) -> dict[str, Any]:
        return {"progress": 100.0 if self.complete else 0.0, "peers": 0, "done": self.complete}

    async def stream(self, file: TorrentFile, chunk_size: int = 4) -> AsyncIterator[bytes]:
        while self.release is not None and not self.release.is_set():
            await asyncio.sleep(0.01)
        for i in range(0, len(self.data), chunk_size):
            yield self.data[i : i + chunk_size]
        while self.endless:
            await asyncio.sleep(0.01)

    def destroy(self) -> None:
        self.destroy_calls += 1


class FakeTorrentClient:
    """Stand-in for torrent.TorrentClient that hands out FakeDownloads."""

    def __init__(self, settings: dict[str, Any] | None = None, **download_kwargs: Any) -> None:
        self.download_kwargs = download_kwargs
        self.downloads: list[FakeDownload] = []
        self.closed = False

    async def add(self, locator: str, save_path: pathlib.Path) -> FakeDownload:
        if not locator.startswith("magnet:?"):
            raise InvalidInputError(f"Unsupported locator: {locator}")
        save_path.mkdir(parents=True, exist_ok=True)
        download = FakeDownload(**self.download_kwargs)
        self.downloads.append(download)
        return download

    def close(self) -> None:
        self.closed = True


def copy_to_playlist_cmd(output_dir: pathlib.Path, **_: Any) -> list[str]:
    """Transcoder stand-in: copies stdin to the playlist once stdin closes."""
    return ["sh", "-c", f'cat > "{output_dir}/input.bin" && printf "#EXTM3U\\n" > "{output_dir}/playlist.m3u8"']


def sink_cmd(output_dir: pathlib.Path, **_: Any) -> list[str]:
    """Transcoder stand-in that runs until stdin closes or it is killed.

    The shell forks `cat`, which outlives a SIGTERM sent to the shell and keeps
    the stdio pipes open until its stdin is closed.
    """
    return ["sh", "-c", "cat > /dev/null; exit 0"]


def failing_cmd(output_dir: pathlib.Path, **_: Any) -> list[str]:
    return ["sh", "-c", "exit 3"]


def playlist_after_input_cmd(output_dir: pathlib.Path, **_: Any) -> list[str]:
    """Transcoder stand-in: writes the playlist once input arrives, then keeps running."""
    return [
        "sh",
        "-c",
        f'head -c 1 > /dev/null && printf "#EXTM3U\\n" > "{output_dir}/playlist.m3u8" && cat > /dev/null',
    ]
