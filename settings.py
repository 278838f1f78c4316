"""Server settings: defaults, JSON settings file, environment overrides."""

from __future__ import annotations

from typing import Any

import json
import logging
import os
import pathlib


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = APP_DIR / ".cache"
SERVER_SETTINGS_FILE = CACHE_DIR / "server_settings.json"
ENV_PREFIX = "TORRENT_HLS_"

DEFAULTS: dict[str, Any] = {
    "host": "0.0.0.0",
    "port": 3000,
    "stream_dir": str(APP_DIR / "streams"),
    "download_dir": str(CACHE_DIR / "downloads"),
    "start_buffer_bytes": 3 * 1024 * 1024,  # ~3MB, enough for ffmpeg to probe the container
    "idle_timeout_secs": 10 * 60,
    "reaper_interval_secs": 5.0,
    "buffer_poll_secs": 0.5,
    "buffer_timeout_secs": 0.0,  # 0 = wait forever, the reaper reclaims stalled sessions
    "hls_time": 6,
    "hls_list_size": 10,
    "listen_interfaces": "0.0.0.0:6881,[::]:6881",
    "log_level": "INFO",
}


def _settings_file() -> pathlib.Path:
    custom = os.environ.get(f"{ENV_PREFIX}SETTINGS")
    return pathlib.Path(custom) if custom else SERVER_SETTINGS_FILE


def _coerce(key: str, value: Any) -> Any:
    """Coerce a raw value to the type of its default."""
    default = DEFAULTS[key]
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value)


def load_settings() -> dict[str, Any]:
    """Load settings. Later sources win: defaults, settings file, environment."""
    settings = dict(DEFAULTS)

    settings_file = _settings_file()
    if settings_file.exists():
        try:
            stored = json.loads(settings_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Ignoring unreadable settings file %s: %s", settings_file, e)
            stored = {}
        for key, value in stored.items():
            if key not in DEFAULTS:
                continue
            try:
                settings[key] = _coerce(key, value)
            except (TypeError, ValueError):
                log.warning("Ignoring invalid %s=%r in %s", key, value, settings_file)

    # Bare PORT is honoured for compatibility with common hosting platforms
    overrides = [("port", "PORT")]
    overrides += [(key, f"{ENV_PREFIX}{key.upper()}") for key in DEFAULTS]
    for key, env_name in overrides:
        raw = os.environ.get(env_name)
        if not raw:
            continue
        try:
            settings[key] = _coerce(key, raw)
        except ValueError:
            log.warning("Ignoring invalid %s=%r", env_name, raw)
    return settings

