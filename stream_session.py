"""Stream session lifecycle management."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import asyncio
import enum
import logging
import pathlib
import threading
import time
import uuid

from errors import BufferTimeoutError, InvalidInputError, NotFoundError, ResourceError
from ffmpeg_command import PLAYLIST_NAME, SEG_PREFIX, build_hls_cmd
from torrent import TorrentFile, select_file
from transcode import TranscodePipe
from util import remove_tree


log = logging.getLogger(__name__)

# Timing defaults (seconds), overridden by settings
_POLL_INTERVAL_SEC = 0.5
_IDLE_TIMEOUT_SEC = 10 * 60
_REAPER_INTERVAL_SEC = 5.0

_START_BUFFER_BYTES = 3 * 1024 * 1024


class SessionState(enum.Enum):
    INITIALIZING = "initializing"
    BUFFERING = "buffering"
    ACTIVE = "active"
    TEARING_DOWN = "tearing_down"
    CLOSED = "closed"


class DownloadHandle(Protocol):
    def has_metadata(self) -> bool: ...
    def files(self) -> list[TorrentFile]: ...
    def select(self, file: TorrentFile) -> None: ...
    def downloaded_bytes(self, file: TorrentFile) -> int: ...
    def is_complete(self) -> bool: ...
    def progress(self) -> dict[str, Any]: ...
    def stream(self, file: TorrentFile) -> Any: ...
    def destroy(self) -> None: ...


class DownloadClient(Protocol):
    async def add(self, locator: str, save_path: pathlib.Path) -> DownloadHandle: ...


@dataclass(slots=True)
class Session:
    id: str
    directory: pathlib.Path
    locator: str
    created: float
    last_seen: float
    state: SessionState = SessionState.INITIALIZING
    download: DownloadHandle | None = None
    pipe: TranscodePipe | None = None
    selected_file: TorrentFile | None = None

    @property
    def closing(self) -> bool:
        return self.state in (SessionState.TEARING_DOWN, SessionState.CLOSED)


def playlist_url(session_id: str) -> str:
    return f"/streams/{session_id}/{PLAYLIST_NAME}"


# ===========================================================================
# Registry
# ===========================================================================


class SessionRegistry:
    """Thread-safe map of session id -> Session.

    Lookups of removed ids return None rather than raising: teardown racing
    with in-flight requests is expected.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def put(self, session_id: str, session: Session) -> None:
        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session {session_id} already registered")
            self._sessions[session_id] = session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def touch(self, session_id: str, now: float | None = None) -> bool:
        """Update last_seen (never backwards). Returns True if the session exists."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            now = self._clock() if now is None else now
            session.last_seen = max(session.last_seen, now)
            return True

    def remove(self, session_id: str) -> Session | None:
        """Remove and return the session. Only one caller ever receives it."""
        with self._lock:
            return self._sessions.pop(session_id, None)

    def snapshot(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def for_each(self, visitor: Callable[[Session], None]) -> None:
        """Visit a snapshot of sessions; the visitor may mutate the registry."""
        for session in self.snapshot():
            visitor(session)


# ===========================================================================
# Readiness Gate
# ===========================================================================


async def _poll_until(
    predicate: Callable[[], bool],
    what: str,
    poll_interval: float,
    timeout: float,
    cancelled: Callable[[], bool] | None,
) -> None:
    deadline = time.monotonic() + timeout if timeout > 0 else None
    while not predicate():
        if cancelled is not None and cancelled():
            raise NotFoundError(f"Session closed while waiting for {what}")
        if deadline is not None and time.monotonic() >= deadline:
            raise BufferTimeoutError(f"Timed out after {timeout:.0f}s waiting for {what}")
        await asyncio.sleep(poll_interval)


async def wait_for_metadata(
    download: DownloadHandle,
    poll_interval: float = _POLL_INTERVAL_SEC,
    timeout: float = 0.0,
    cancelled: Callable[[], bool] | None = None,
) -> None:
    """Wait until the torrent's file list is known."""
    await _poll_until(download.has_metadata, "torrent metadata", poll_interval, timeout, cancelled)


async def wait_for_buffer(
    download: DownloadHandle,
    file: TorrentFile,
    min_bytes: int,
    poll_interval: float = _POLL_INTERVAL_SEC,
    timeout: float = 0.0,
    cancelled: Callable[[], bool] | None = None,
) -> None:
    """Wait until `file` has min_bytes downloaded or the whole download is complete.

    timeout <= 0 waits indefinitely.
    """

    def ready() -> bool:
        return download.downloaded_bytes(file) >= min_bytes or download.is_complete()

    await _poll_until(ready, "start buffer", poll_interval, timeout, cancelled)


# ===========================================================================
# Lifecycle Controller
# ===========================================================================


class SessionManager:
    """Creates, tracks and tears down stream sessions.

    Teardown has two triggers, transcoder exit and the idle reaper. Both go
    through `teardown`, which claims the session by removing it from the
    registry so cleanup runs at most once.
    """

    def __init__(
        self,
        client: DownloadClient,
        settings: dict[str, Any],
        build_cmd: Callable[..., list[str]] = build_hls_cmd,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.registry = SessionRegistry(clock)
        self.stream_dir = pathlib.Path(settings["stream_dir"])
        self.download_dir = pathlib.Path(settings["download_dir"])
        self.start_buffer_bytes = int(settings.get("start_buffer_bytes", _START_BUFFER_BYTES))
        self.idle_timeout = float(settings.get("idle_timeout_secs", _IDLE_TIMEOUT_SEC))
        self.poll_interval = float(settings.get("buffer_poll_secs", _POLL_INTERVAL_SEC))
        self.buffer_timeout = float(settings.get("buffer_timeout_secs", 0.0))
        self.hls_time = int(settings.get("hls_time", 6))
        self.hls_list_size = int(settings.get("hls_list_size", 10))
        self._build_cmd = build_cmd
        self._clock = clock
        self._background_tasks: set[asyncio.Task[None]] = set()

    def _spawn_background_task(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _transcode_cmd(self, output_dir: pathlib.Path) -> list[str]:
        return self._build_cmd(output_dir, hls_time=self.hls_time, hls_list_size=self.hls_list_size)

    # -----------------------------------------------------------------------
    # Create
    # -----------------------------------------------------------------------

    async def create(self, locator: str) -> tuple[str, str]:
        """Start a session and return (session_id, playlist_url) once transcoding runs."""
        locator = (locator or "").strip()
        if not locator:
            raise InvalidInputError("locator is required")

        session_id = str(uuid.uuid4())
        directory = self.stream_dir / session_id
        try:
            directory.mkdir(parents=True)
        except OSError as e:
            raise ResourceError(f"Cannot create session dir {directory}: {e}") from e

        now = self._clock()
        session = Session(
            id=session_id,
            directory=directory,
            locator=locator,
            created=now,
            last_seen=now,
        )
        self.registry.put(session_id, session)
        log.info("Created session %s for %s", session_id, locator[:80])

        try:
            await self._setup(session)
        except (Exception, asyncio.CancelledError) as e:
            log.warning("Session %s setup failed: %s", session_id, e)
            await self.teardown(session_id)
            raise

        return session_id, playlist_url(session_id)

    def _ensure_open(self, session: Session) -> None:
        if session.closing:
            raise NotFoundError(f"Session {session.id} was closed during setup")

    async def _setup(self, session: Session) -> None:
        download = await self.client.add(session.locator, self.download_dir / session.id)
        session.download = download
        if session.closing:
            # Reaped while the torrent was being added; teardown already ran
            download.destroy()
            remove_tree(self.download_dir / session.id)
            self._ensure_open(session)

        def cancelled() -> bool:
            return session.closing

        await wait_for_metadata(download, self.poll_interval, self.buffer_timeout, cancelled)
        log.info("Torrent ready for session %s", session.id)

        file = select_file(download.files())
        download.select(file)
        session.selected_file = file
        session.state = SessionState.BUFFERING
        log.info("Session %s selected file: %s (%d bytes)", session.id, file.name, file.length)

        await wait_for_buffer(
            download,
            file,
            self.start_buffer_bytes,
            self.poll_interval,
            self.buffer_timeout,
            cancelled,
        )
        self._ensure_open(session)
        log.info("Buffer ready for session %s, starting transcoder", session.id)

        pipe = TranscodePipe(session.id, self._transcode_cmd)
        session.pipe = pipe
        await pipe.start(download.stream(file), session.directory)
        if session.closing:
            await pipe.stop()
            self._ensure_open(session)

        self._spawn_background_task(self._teardown_on_exit(session.id, pipe))
        session.state = SessionState.ACTIVE

    async def _teardown_on_exit(self, session_id: str, pipe: TranscodePipe) -> None:
        code = await pipe.wait()
        log.info("Transcoder closed (code %s), cleaning session %s", code, session_id)
        await self.teardown(session_id)

    # -----------------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------------

    async def teardown(self, session_id: str) -> bool:
        """Stop transcoder, destroy download, delete files. Never raises.

        Returns False if the session was already gone.
        """
        session = self.registry.remove(session_id)
        if session is None:
            return False
        session.state = SessionState.TEARING_DOWN
        log.info("Cleaning session %s", session_id)

        if session.pipe is not None:
            try:
                if await session.pipe.stop():
                    log.info("Killed transcoder for session %s", session_id)
            except Exception as e:
                log.warning("Failed to stop transcoder for session %s: %s", session_id, e)

        if session.download is not None:
            try:
                session.download.destroy()
            except Exception as e:
                log.warning("Failed to destroy download for session %s: %s", session_id, e)

        remove_tree(session.directory)
        remove_tree(self.download_dir / session_id)

        session.state = SessionState.CLOSED
        return True

    async def shutdown(self) -> None:
        """Tear down every session."""
        for session in self.registry.snapshot():
            await self.teardown(session.id)
        for task in list(self._background_tasks):
            task.cancel()

    # -----------------------------------------------------------------------
    # Access
    # -----------------------------------------------------------------------

    def get(self, session_id: str) -> Session | None:
        return self.registry.get(session_id)

    def touch(self, session_id: str) -> bool:
        return self.registry.touch(session_id)

    def resolve_file(self, session_id: str, file_path: str) -> pathlib.Path:
        """Return the on-disk path of a session file. Counts as session activity."""
        if not self.registry.touch(session_id):
            raise NotFoundError("Session not found")
        session = self.registry.get(session_id)
        if session is None:
            raise NotFoundError("Session not found")
        try:
            root = session.directory.resolve()
            target = (root / file_path).resolve()
            found = target.is_relative_to(root) and target.is_file()
        except (ValueError, OSError) as e:
            log.debug("Rejected path %r for session %s: %s", file_path, session_id, e)
            found = False
        if not found:
            raise NotFoundError(f"File not found: {file_path}")
        return target

    def status(self, session_id: str) -> dict[str, Any]:
        if not self.registry.touch(session_id):
            raise NotFoundError("Session not found")
        session = self.registry.get(session_id)
        if session is None:
            raise NotFoundError("Session not found")

        file = session.selected_file
        result: dict[str, Any] = {
            "sessionId": session.id,
            "state": session.state.value,
            "playlistUrl": playlist_url(session.id),
            "file": None,
            "download": {},
            "segments": 0,
            "playlistReady": False,
        }
        if file is not None:
            result["file"] = {"name": file.name, "length": file.length}
        if session.download is not None:
            try:
                result["download"] = session.download.progress()
                if file is not None:
                    result["file"]["downloaded"] = session.download.downloaded_bytes(file)
            except Exception as e:
                log.debug("Progress unavailable for session %s: %s", session.id, e)
        if session.directory.is_dir():
            result["segments"] = len(list(session.directory.glob(f"{SEG_PREFIX}*.ts")))
            result["playlistReady"] = (session.directory / PLAYLIST_NAME).exists()
        return result

    # -----------------------------------------------------------------------
    # Reaper
    # -----------------------------------------------------------------------

    async def reap_idle(self, now: float | None = None) -> list[str]:
        """Tear down sessions idle longer than the idle timeout. Returns their ids."""
        now = self._clock() if now is None else now
        reaped = []
        for session in self.registry.snapshot():
            # Re-read: the session may have been touched or removed since the snapshot
            current = self.registry.get(session.id)
            if current is None or now - current.last_seen <= self.idle_timeout:
                continue
            log.info("Session %s idle for %.0fs, tearing down", session.id, now - current.last_seen)
            if await self.teardown(session.id):
                reaped.append(session.id)
        return reaped

    async def run_reaper(self, interval: float = _REAPER_INTERVAL_SEC) -> None:
        log.info("Starting session reaper (interval=%.1fs, idle=%.0fs)", interval, self.idle_timeout)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap_idle()
            except Exception:
                log.exception("Error in session reaper")


# ===========================================================================
# Startup
# ===========================================================================


def _is_session_dir(path: pathlib.Path) -> bool:
    try:
        uuid.UUID(path.name)
    except ValueError:
        return False
    return path.is_dir()


def purge_orphans(*roots: pathlib.Path) -> int:
    """Remove session directories left behind by a previous run."""
    removed = 0
    for root in roots:
        if not root.is_dir():
            continue
        for d in root.iterdir():
            if _is_session_dir(d) and remove_tree(d):
                removed += 1
    if removed:
        log.info("Startup cleanup: removed %d orphaned session dirs", removed)
    return removed
