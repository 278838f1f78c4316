"""FFmpeg command building for stdin → HLS transcoding."""

from __future__ import annotations

import pathlib


# Segment/playlist naming within a session directory
PLAYLIST_NAME = "playlist.m3u8"
SEG_PREFIX = "segment-"  # segment-00000.ts, segment-00001.ts, ...
SEG_PATTERN = f"{SEG_PREFIX}%05d.ts"

_HLS_SEGMENT_DURATION_SEC = 6
_HLS_LIST_SIZE = 10

# Torrent media often has broken or late container metadata
_PROBE_SIZE = "200M"
_ANALYZE_DURATION = "200M"


def _build_video_args() -> list[str]:
    """Build video encode args."""
    return ["-c:v", "libx264", "-preset", "veryfast", "-crf", "23"]


def _build_audio_args() -> list[str]:
    """Build audio args. Always re-encode, sources with 0-channel audio break copy."""
    return ["-c:a", "aac", "-ac", "2", "-ar", "44100", "-b:a", "128k"]


def build_hls_cmd(
    output_dir: str | pathlib.Path,
    hls_time: int = _HLS_SEGMENT_DURATION_SEC,
    hls_list_size: int = _HLS_LIST_SIZE,
) -> list[str]:
    """Build ffmpeg command reading a live byte stream on stdin and writing HLS to output_dir."""
    output_dir = pathlib.Path(output_dir)
    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel",
        "warning",
        "-analyzeduration",
        _ANALYZE_DURATION,
        "-probesize",
        _PROBE_SIZE,
        "-i",
        "pipe:0",
    ]

    # First video stream, first audio stream if there is one
    cmd.extend(["-map", "0:v:0", "-map", "0:a:0?"])
    cmd.extend(_build_video_args())
    cmd.extend(_build_audio_args())

    cmd.extend(
        [
            "-f",
            "hls",
            "-hls_time",
            str(int(hls_time)),
            "-hls_list_size",
            str(int(hls_list_size)),
            "-hls_flags",
            "delete_segments+append_list",
            "-hls_segment_filename",
            str(output_dir / SEG_PATTERN),
            str(output_dir / PLAYLIST_NAME),
        ]
    )
    return cmd
