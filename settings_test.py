"""Tests for settings.py."""

from __future__ import annotations

from pathlib import Path

import json

import pytest

import settings


@pytest.fixture
def settings_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the settings module at a temp file and clear env overrides."""
    path = tmp_path / "server_settings.json"
    monkeypatch.setenv("TORRENT_HLS_SETTINGS", str(path))
    monkeypatch.delenv("PORT", raising=False)
    for key in settings.DEFAULTS:
        monkeypatch.delenv(f"TORRENT_HLS_{key.upper()}", raising=False)
    return path


class TestLoadSettings:
    """Tests for load_settings precedence and coercion."""

    def test_defaults_without_file(self, settings_file: Path):
        loaded = settings.load_settings()
        assert loaded["port"] == 3000
        assert loaded["start_buffer_bytes"] == 3 * 1024 * 1024
        assert loaded["idle_timeout_secs"] == 600
        assert loaded["buffer_timeout_secs"] == 0.0

    def test_file_overrides_defaults(self, settings_file: Path):
        settings_file.write_text(json.dumps({"idle_timeout_secs": 30, "unknown": 1}))
        loaded = settings.load_settings()
        assert loaded["idle_timeout_secs"] == 30
        assert "unknown" not in loaded

    def test_env_overrides_file(self, settings_file: Path, monkeypatch: pytest.MonkeyPatch):
        settings_file.write_text(json.dumps({"idle_timeout_secs": 30}))
        monkeypatch.setenv("TORRENT_HLS_IDLE_TIMEOUT_SECS", "45")
        assert settings.load_settings()["idle_timeout_secs"] == 45

    def test_bare_port_env(self, settings_file: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PORT", "8080")
        assert settings.load_settings()["port"] == 8080

    def test_float_coercion(self, settings_file: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TORRENT_HLS_BUFFER_POLL_SECS", "0.25")
        assert settings.load_settings()["buffer_poll_secs"] == 0.25

    def test_invalid_env_value_ignored(self, settings_file: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TORRENT_HLS_START_BUFFER_BYTES", "lots")
        assert settings.load_settings()["start_buffer_bytes"] == 3 * 1024 * 1024

    def test_invalid_file_value_ignored(self, settings_file: Path):
        settings_file.write_text(json.dumps({"hls_time": "six", "hls_list_size": 20}))
        loaded = settings.load_settings()
        assert loaded["hls_time"] == 6
        assert loaded["hls_list_size"] == 20

    def test_corrupt_file_ignored(self, settings_file: Path):
        settings_file.write_text("{not json")
        assert settings.load_settings()["port"] == 3000


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
