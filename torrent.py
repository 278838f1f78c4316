"""Swarm download adapter over libtorrent: add, select, progress, stream, destroy."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import asyncio
import logging
import pathlib
import urllib.error

import libtorrent as lt

from errors import InvalidInputError, NoPlayableContentError, ResourceError, UpstreamFailure
from util import fetch_bytes


log = logging.getLogger(__name__)

MEDIA_EXTENSIONS = frozenset({"mp4", "mkv", "avi", "mov", "webm", "ts"})

# libtorrent file priorities
_PRIORITY_SKIP = 0
_PRIORITY_TOP = 7

_STREAM_CHUNK_BYTES = 256 * 1024
_PIECE_POLL_SEC = 0.2
_DEADLINE_WINDOW = 8  # pieces ahead of the reader that get a deadline


@dataclass(slots=True, frozen=True)
class TorrentFile:
    index: int
    name: str
    path: str  # relative to the download's save path
    length: int
    offset: int = 0  # byte offset of the file within the torrent


def select_file(files: list[TorrentFile]) -> TorrentFile:
    """Pick the file to stream.

    Largest file with a known media extension, else the largest file overall.
    Ties go to the first file encountered.
    """
    if not files:
        raise NoPlayableContentError("Torrent contains no files")

    def largest(candidates: list[TorrentFile]) -> TorrentFile:
        best = candidates[0]
        for f in candidates[1:]:
            if f.length > best.length:
                best = f
        return best

    media = [f for f in files if _is_media(f.name)]
    return largest(media) if media else largest(files)


def _is_media(name: str) -> bool:
    return pathlib.PurePath(name).suffix.lower().lstrip(".") in MEDIA_EXTENSIONS


def _is_pad_file(path: str) -> bool:
    return ".pad" in pathlib.PurePath(path).parts


def parse_locator(locator: str, fetch: Callable[[str], bytes] = fetch_bytes) -> Any:
    """Turn a locator into libtorrent add_torrent_params.

    Accepts magnet URIs, http(s) URLs of .torrent files and local .torrent paths.
    Blocking for URLs; call from a worker thread.
    """
    locator = locator.strip()
    if not locator:
        raise InvalidInputError("locator is required")

    if locator.lower().startswith("magnet:"):
        if not locator.lower().startswith("magnet:?"):
            raise InvalidInputError(f"Malformed magnet URI: {locator[:60]}")
        try:
            return lt.parse_magnet_uri(locator)
        except (RuntimeError, ValueError) as e:
            raise InvalidInputError(f"Malformed magnet URI: {e}") from e

    if locator.lower().startswith(("http://", "https://")):
        try:
            data = fetch(locator)
        except (urllib.error.URLError, OSError) as e:
            raise InvalidInputError(f"Could not fetch torrent: {e}") from e
        return _params_from_torrent_bytes(data)

    path = pathlib.Path(locator)
    if path.suffix.lower() == ".torrent" and path.is_file():
        return _params_from_torrent_bytes(path.read_bytes())

    raise InvalidInputError(f"Unsupported locator: {locator[:60]}")


def _params_from_torrent_bytes(data: bytes) -> Any:
    try:
        decoded = lt.bdecode(data)
        if decoded is None:
            raise ValueError("not bencoded")
        params = lt.add_torrent_params()
        params.ti = lt.torrent_info(decoded)
    except (RuntimeError, ValueError, TypeError) as e:
        raise InvalidInputError(f"Invalid torrent file: {e}") from e
    return params


class Download:
    """One torrent owned by one stream session."""

    def __init__(self, session: Any, handle: Any, save_path: pathlib.Path) -> None:
        self._session = session
        self._handle = handle
        self.save_path = save_path
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def _torrent_info(self) -> Any:
        ti = self._handle.torrent_file()
        if ti is None:
            raise UpstreamFailure("Torrent metadata not available yet")
        return ti

    def has_metadata(self) -> bool:
        if self._destroyed:
            return False
        return bool(self._handle.status().has_metadata)

    def name(self) -> str:
        return self._handle.status().name

    def files(self) -> list[TorrentFile]:
        """List files in torrent order, skipping BEP 47 padding files."""
        fs = self._torrent_info().files()
        files = []
        for i in range(fs.num_files()):
            path = fs.file_path(i)
            if _is_pad_file(path):
                continue
            files.append(
                TorrentFile(
                    index=i,
                    name=fs.file_name(i),
                    path=path,
                    length=fs.file_size(i),
                    offset=fs.file_offset(i),
                )
            )
        return files

    def select(self, file: TorrentFile) -> None:
        """Download only `file`, in piece order."""
        num_files = self._torrent_info().files().num_files()
        priorities = [_PRIORITY_SKIP] * num_files
        priorities[file.index] = _PRIORITY_TOP
        self._handle.prioritize_files(priorities)
        self._handle.set_flags(lt.torrent_flags.sequential_download)

    def downloaded_bytes(self, file: TorrentFile) -> int:
        if self._destroyed:
            return 0
        progress = self._handle.file_progress()
        return int(progress[file.index]) if file.index < len(progress) else 0

    def is_complete(self) -> bool:
        if self._destroyed:
            return False
        status = self._handle.status()
        return bool(status.is_finished or status.is_seeding)

    def progress(self) -> dict[str, Any]:
        if self._destroyed:
            return {}
        status = self._handle.status()
        return {
            "name": status.name,
            "progress": round(status.progress * 100, 2),
            "download_rate": status.download_rate,
            "upload_rate": status.upload_rate,
            "peers": status.num_peers,
            "done": bool(status.is_finished or status.is_seeding),
        }

    async def stream(
        self,
        file: TorrentFile,
        chunk_size: int = _STREAM_CHUNK_BYTES,
    ) -> AsyncIterator[bytes]:
        """Yield the bytes of `file` in order, waiting for pieces as they arrive."""
        piece_length = self._torrent_info().piece_length()
        disk_path = self.save_path / file.path
        pos = 0
        while pos < file.length:
            piece = (file.offset + pos) // piece_length
            await self._wait_for_piece(piece)
            # Bytes of this file covered by the current piece
            end = min(file.length, (piece + 1) * piece_length - file.offset)
            while pos < end:
                size = min(chunk_size, end - pos)
                chunk = await asyncio.to_thread(_read_range, disk_path, pos, size)
                if not chunk:
                    raise UpstreamFailure(f"Short read from {disk_path} at {pos}")
                pos += len(chunk)
                yield chunk

    async def _wait_for_piece(self, piece: int) -> None:
        num_pieces = self._torrent_info().num_pieces()
        for ahead in range(_DEADLINE_WINDOW):
            if piece + ahead < num_pieces and not self._handle.have_piece(piece + ahead):
                self._handle.set_piece_deadline(piece + ahead, ahead * 1000)
        while not self._handle.have_piece(piece):
            if self._destroyed:
                raise UpstreamFailure("Download destroyed while streaming")
            await asyncio.sleep(_PIECE_POLL_SEC)

    def destroy(self) -> None:
        """Stop the torrent and delete its data. Safe to call more than once."""
        if self._destroyed:
            return
        self._destroyed = True
        self._session.remove_torrent(self._handle, lt.session.delete_files)


def _read_range(path: pathlib.Path, offset: int, size: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(offset)
        return f.read(size)


class TorrentClient:
    """Wraps a single libtorrent session shared by all stream sessions."""

    def __init__(self, settings: dict[str, Any]) -> None:
        self._session = lt.session(
            {
                "listen_interfaces": settings.get("listen_interfaces", "0.0.0.0:6881"),
                "alert_mask": lt.alert.category_t.error_notification,
                "enable_dht": True,
            }
        )

    async def add(self, locator: str, save_path: pathlib.Path) -> Download:
        """Start downloading `locator` into `save_path`."""
        params = await asyncio.to_thread(parse_locator, locator)
        try:
            save_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceError(f"Cannot create download dir {save_path}: {e}") from e
        params.save_path = str(save_path)
        try:
            handle = self._session.add_torrent(params)
        except RuntimeError as e:
            # libtorrent refuses duplicates of a torrent that is already active
            raise ResourceError(f"Could not add torrent: {e}") from e
        log.info("Added torrent to %s", save_path)
        return Download(self._session, handle, save_path)

    def close(self) -> None:
        self._session.pause()
