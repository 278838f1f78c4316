"""Torrent → HLS server.

POST /stream  {"locator": "<magnet-or-torrent-url>"}
Returns: {"sessionId": ..., "playlistUrl": ...}
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import Any

import asyncio
import logging
import pathlib
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

import uvicorn

import ffmpeg_command
import settings as settings_module
import stream_session
import torrent
from errors import StreamError


log = logging.getLogger(__name__)

_MEDIA_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}


class StreamRequest(BaseModel):
    locator: str | None = None
    magnet: str | None = None  # accepted for older clients


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = settings_module.load_settings()
    stream_dir = pathlib.Path(settings["stream_dir"])
    download_dir = pathlib.Path(settings["download_dir"])
    stream_dir.mkdir(parents=True, exist_ok=True)
    download_dir.mkdir(parents=True, exist_ok=True)
    stream_session.purge_orphans(stream_dir, download_dir)

    client = torrent.TorrentClient(settings)
    manager = stream_session.SessionManager(
        client,
        settings,
        build_cmd=ffmpeg_command.build_hls_cmd,
    )
    app.state.sessions = manager
    reaper = asyncio.create_task(manager.run_reaper(settings["reaper_interval_secs"]))
    log.info("Torrent → HLS server ready, streams in %s", stream_dir)
    try:
        yield
    finally:
        reaper.cancel()
        with suppress(asyncio.CancelledError):
            await reaper
        await manager.shutdown()
        client.close()


app = FastAPI(lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


@app.middleware("http")
async def access_log(request: Request, call_next: Any) -> Any:
    """One line per request: method path status length - ms."""
    start = time.perf_counter()
    response = await call_next(request)
    log.info(
        "%s %s %d %s - %.3f ms",
        request.method,
        request.url.path,
        response.status_code,
        response.headers.get("content-length", "-"),
        (time.perf_counter() - start) * 1000,
    )
    return response


@app.exception_handler(StreamError)
async def stream_error_handler(request: Request, exc: StreamError) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse({"error": "locator is required"}, status_code=400)


def _sessions(request: Request) -> stream_session.SessionManager:
    return request.app.state.sessions


# ===========================================================================
# Create new session
# ===========================================================================


@app.post("/stream")
async def create_stream(body: StreamRequest, request: Request) -> Any:
    locator = (body.locator or body.magnet or "").strip()
    if not locator:
        return JSONResponse({"error": "locator is required"}, status_code=400)
    try:
        session_id, playlist = await _sessions(request).create(locator)
    except StreamError:
        raise
    except Exception as e:
        log.exception("Failed to create stream for %s", locator[:80])
        return JSONResponse({"error": str(e)}, status_code=500)
    return {"sessionId": session_id, "playlistUrl": playlist}


@app.get("/stream/{session_id}")
async def stream_status(session_id: str, request: Request) -> dict[str, Any]:
    return _sessions(request).status(session_id)


# ===========================================================================
# Serve playlist + segments
# ===========================================================================


@app.get("/streams/{session_id}/{file_path:path}")
async def stream_file(session_id: str, file_path: str, request: Request) -> FileResponse:
    path = _sessions(request).resolve_file(session_id, file_path)
    headers = {"Cache-Control": "no-cache"} if path.suffix == ".m3u8" else None
    return FileResponse(path, media_type=_MEDIA_TYPES.get(path.suffix), headers=headers)


def main() -> None:
    settings = settings_module.load_settings()
    logging.basicConfig(
        level=settings["log_level"],
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    uvicorn.run(app, host=settings["host"], port=settings["port"], access_log=False)


if __name__ == "__main__":
    main()
