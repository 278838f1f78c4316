"""Transcode pipe: one ffmpeg process fed from a live byte stream."""

from __future__ import annotations

from collections.abc import AsyncIterable, Callable
from typing import Any

import asyncio
import contextlib
import enum
import logging
import pathlib

from errors import ResourceError, UpstreamFailure


log = logging.getLogger(__name__)

# Grace period between SIGTERM and SIGKILL
_TERMINATE_GRACE_SEC = 2.0
_STOP_POLL_SEC = 0.01


class PipeState(enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    EXITED = "exited"


async def _monitor_ffmpeg_stderr(
    process: asyncio.subprocess.Process,
    session_id: str,
) -> None:
    assert process.stderr is not None
    while True:
        line = await process.stderr.readline()
        if not line:
            break
        text = line.decode(errors="replace").rstrip()
        lowered = text.lower()
        is_fatal = "fatal" in lowered or "aborting" in lowered or "error" in lowered
        level = logging.WARNING if is_fatal else logging.DEBUG
        log.log(level, "ffmpeg:%s %s", session_id, text)


class TranscodePipe:
    """Owns the transcoder process of one session.

    `start` spawns the process and connects the source stream to its stdin.
    Process exit, for any reason, is reported once through `wait`.
    `stop` kills the process and is a no-op once it has exited.
    """

    def __init__(
        self,
        session_id: str,
        build_cmd: Callable[[pathlib.Path], list[str]],
    ) -> None:
        self.session_id = session_id
        self._build_cmd = build_cmd
        self._process: asyncio.subprocess.Process | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._exited = asyncio.Event()

    @property
    def state(self) -> PipeState:
        if self._process is None:
            return PipeState.NOT_STARTED
        if self._process.returncode is None:
            return PipeState.RUNNING
        return PipeState.EXITED

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    async def start(self, source: AsyncIterable[bytes], output_dir: pathlib.Path) -> None:
        if self._process is not None:
            raise RuntimeError(f"Transcode pipe for {self.session_id} already started")
        cmd = self._build_cmd(output_dir)
        log.info("Starting transcode for session %s: %s", self.session_id, " ".join(cmd))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ResourceError(f"Failed to start transcoder: {e}") from e
        log.info("Transcoder pid=%s for session %s", self._process.pid, self.session_id)

        self._pump_task = self._spawn(self._pump(source))
        self._spawn(_monitor_ffmpeg_stderr(self._process, self.session_id))
        self._spawn(self._reap())

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _pump(self, source: AsyncIterable[bytes]) -> None:
        """Copy source bytes into the process stdin until either side ends."""
        process = self._process
        assert process is not None and process.stdin is not None
        stdin = process.stdin
        sent = 0
        try:
            async for chunk in source:
                stdin.write(chunk)
                await stdin.drain()
                sent += len(chunk)
            log.info("Source finished for session %s (%d bytes)", self.session_id, sent)
        except (BrokenPipeError, ConnectionResetError):
            log.debug("Transcoder closed stdin for session %s after %d bytes", self.session_id, sent)
        except UpstreamFailure as e:
            log.warning("Source failed for session %s: %s", self.session_id, e)
        except Exception:
            log.exception("Pump failed for session %s after %d bytes", self.session_id, sent)
        finally:
            self._close_stdin()

    def _close_stdin(self) -> None:
        if self._process is not None and self._process.stdin is not None:
            with contextlib.suppress(OSError, RuntimeError):
                self._process.stdin.close()

    async def _reap(self) -> None:
        assert self._process is not None
        code = await self._process.wait()
        level = logging.INFO if code == 0 else logging.WARNING
        log.log(level, "Transcoder for session %s exited with code %s", self.session_id, code)
        # The pump may still be blocked on the source
        if self._pump_task and not self._pump_task.done():
            self._pump_task.cancel()
        self._exited.set()

    async def wait(self) -> int | None:
        """Wait until the process has exited. Returns its exit code."""
        if self._process is None:
            raise RuntimeError(f"Transcode pipe for {self.session_id} not started")
        await self._exited.wait()
        return self._process.returncode

    async def _wait_returncode(self, timeout: float) -> bool:
        """Poll until the process has a return code. Open pipes held by children do not block this."""
        assert self._process is not None
        deadline = asyncio.get_running_loop().time() + timeout
        while self._process.returncode is None:
            if asyncio.get_running_loop().time() >= deadline:
                return False
            await asyncio.sleep(_STOP_POLL_SEC)
        return True

    async def stop(self) -> bool:
        """Terminate the process (SIGTERM then SIGKILL). Returns True if it had to be killed."""
        process = self._process
        if process is None or process.returncode is not None:
            return False
        if self._pump_task and not self._pump_task.done():
            self._pump_task.cancel()
        try:
            process.terminate()
            # Children of the transcoder may hold stdin open, so close our end
            self._close_stdin()
            if not await self._wait_returncode(_TERMINATE_GRACE_SEC):
                process.kill()
                await self._wait_returncode(_TERMINATE_GRACE_SEC)
        except ProcessLookupError:
            return False
        finally:
            if process.returncode is not None:
                self._exited.set()
        return True
