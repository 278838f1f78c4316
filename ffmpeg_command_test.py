"""Tests for ffmpeg command generation."""

from pathlib import Path

import pytest

from ffmpeg_command import PLAYLIST_NAME, SEG_PATTERN, SEG_PREFIX, build_hls_cmd


def _arg(cmd: list[str], flag: str) -> str:
    return cmd[cmd.index(flag) + 1]


class TestBuildHlsCmd:
    """Tests for build_hls_cmd."""

    def test_reads_from_stdin(self):
        cmd = build_hls_cmd("/tmp/s1")
        assert cmd[0] == "ffmpeg"
        assert _arg(cmd, "-i") == "pipe:0"

    def test_probe_args_before_input(self):
        cmd = build_hls_cmd("/tmp/s1")
        i_idx = cmd.index("-i")
        assert cmd.index("-probesize") < i_idx
        assert cmd.index("-analyzeduration") < i_idx
        assert _arg(cmd, "-probesize") == "200M"

    def test_maps_video_and_optional_audio(self):
        cmd = build_hls_cmd("/tmp/s1")
        maps = [cmd[i + 1] for i, a in enumerate(cmd) if a == "-map"]
        assert maps == ["0:v:0", "0:a:0?"]

    def test_encoders(self):
        cmd = build_hls_cmd("/tmp/s1")
        assert _arg(cmd, "-c:v") == "libx264"
        assert _arg(cmd, "-c:a") == "aac"
        assert _arg(cmd, "-ac") == "2"

    def test_sliding_window_defaults(self):
        cmd = build_hls_cmd("/tmp/s1")
        assert _arg(cmd, "-f") == "hls"
        assert _arg(cmd, "-hls_time") == "6"
        assert _arg(cmd, "-hls_list_size") == "10"
        assert "delete_segments" in _arg(cmd, "-hls_flags")

    @pytest.mark.parametrize("hls_time,list_size", [(2, 5), (10, 30)])
    def test_custom_window(self, hls_time, list_size):
        cmd = build_hls_cmd("/tmp/s1", hls_time=hls_time, hls_list_size=list_size)
        assert _arg(cmd, "-hls_time") == str(hls_time)
        assert _arg(cmd, "-hls_list_size") == str(list_size)

    def test_output_paths_inside_session_dir(self, tmp_path: Path):
        cmd = build_hls_cmd(tmp_path)
        assert _arg(cmd, "-hls_segment_filename") == str(tmp_path / SEG_PATTERN)
        assert cmd[-1] == str(tmp_path / PLAYLIST_NAME)
        assert SEG_PATTERN.startswith(SEG_PREFIX)


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
