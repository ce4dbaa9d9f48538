import subprocess
import pytest
from pathlib import Path
from unittest.mock import patch, MagicMock
from vidsqueeze.config.models import CompressionSettings
from vidsqueeze.domain.errors import CompressionError, ErrorKind
from vidsqueeze.infrastructure.ffmpeg import FFmpegAdapter, parse_progress_line, parse_progress_seconds


def test_command_software_encoding(settings):
    adapter = FFmpegAdapter(binary="/usr/bin/ffmpeg", platform="linux")
    cmd = adapter.build_command(Path("in.mov"), Path("out/in_compressed.tmp"), settings)

    assert cmd[0] == "/usr/bin/ffmpeg"
    assert "-nostdin" in cmd
    assert cmd[cmd.index("-i") + 1] == "in.mov"
    assert cmd[cmd.index("-c:v") + 1] == "libx264"
    assert cmd[cmd.index("-crf") + 1] == "23"
    assert cmd[cmd.index("-c:a") + 1] == "copy"
    assert cmd[cmd.index("-progress") + 1] == "pipe:2"
    assert cmd[-3:] == ["-f", "mp4", "out/in_compressed.tmp"]


def test_command_encodes_audio_when_not_copying():
    settings = CompressionSettings(copy_audio=False, use_hardware_acceleration=False)
    cmd = FFmpegAdapter(platform="linux").build_command(Path("a.mp4"), Path("b.tmp"), settings)
    assert cmd[cmd.index("-c:a") + 1] == "aac"
    assert "128k" in cmd


def test_hardware_encoder_used_when_available():
    settings = CompressionSettings(codec="h265", crf=24, use_hardware_acceleration=True)
    adapter = FFmpegAdapter(platform="darwin")
    with patch.object(adapter, "is_encoder_available", return_value=True):
        cmd = adapter.build_command(Path("a.mp4"), Path("b.tmp"), settings)
    assert cmd[cmd.index("-c:v") + 1] == "hevc_videotoolbox"
    assert cmd[cmd.index("-q:v") + 1] == "24"
    assert "-crf" not in cmd


def test_hardware_encoder_falls_back_to_software():
    settings = CompressionSettings(codec="h264", use_hardware_acceleration=True)
    adapter = FFmpegAdapter(platform="linux")
    with patch.object(adapter, "is_encoder_available", return_value=False):
        cmd = adapter.build_command(Path("a.mp4"), Path("b.tmp"), settings)
    assert cmd[cmd.index("-c:v") + 1] == "libx264"


def test_encoder_probe_is_cached():
    adapter = FFmpegAdapter(platform="linux")
    result = MagicMock(returncode=0, stdout=" V....D h264_nvenc  NVIDIA NVENC H.264 encoder")
    with patch("subprocess.run", return_value=result) as mock_run:
        assert adapter.is_encoder_available("h264_nvenc")
        assert adapter.is_encoder_available("h264_nvenc")
    assert mock_run.call_count == 1


def test_encoder_probe_failure_means_unavailable():
    adapter = FFmpegAdapter(platform="linux")
    with patch("subprocess.run", side_effect=OSError("boom")):
        assert adapter.is_encoder_available("hevc_nvenc") is False


def test_spawn_isolates_process():
    adapter = FFmpegAdapter()
    with patch("subprocess.Popen") as mock_popen:
        adapter.spawn(["ffmpeg", "-version"])
    kwargs = mock_popen.call_args.kwargs
    assert kwargs["start_new_session"] is True
    assert kwargs["stdin"] is subprocess.DEVNULL
    assert kwargs["stderr"] is subprocess.PIPE


@pytest.mark.parametrize("line,expected", [
    ("out_time_us=2500000", 2.5),
    ("out_time_ms=2500000", 2.5),
    ("frame=  100 fps=25 q=28.0 size=1024kB time=00:01:05.50 bitrate=128kbits/s", 65.5),
    ("progress=continue", None),
    ("out_time=00:00:02.500000", 2.5),
    ("bitrate=1024.0kbits/s", None),
])
def test_parse_progress_seconds(line, expected):
    assert parse_progress_seconds(line) == expected


def test_parse_progress_line_fraction():
    assert parse_progress_line("out_time_us=5000000", 10.0) == pytest.approx(0.5)
    assert parse_progress_line("out_time_us=15000000", 10.0) == 1.0


def test_parse_progress_line_needs_duration():
    assert parse_progress_line("out_time_us=5000000", 0.0) is None
    assert parse_progress_line("out_time_us=0", 10.0) is None


def test_locate_prefers_configured_binary(tmp_path):
    binary = tmp_path / "ffmpeg"
    binary.write_text("#!/bin/sh\n")
    binary.chmod(0o755)
    with patch("subprocess.run", return_value=MagicMock(returncode=0)), \
            patch("shutil.which", return_value=None):
        adapter = FFmpegAdapter.locate(str(binary), platform="linux")
    assert adapter.binary == str(binary)
    assert adapter.platform == "linux"


def test_locate_raises_when_nothing_works(tmp_path):
    with patch("shutil.which", return_value=None), \
            patch("vidsqueeze.infrastructure.ffmpeg.ENGINE_CANDIDATES", [str(tmp_path / "missing")]):
        with pytest.raises(CompressionError) as exc_info:
            FFmpegAdapter.locate(None)
    assert exc_info.value.kind is ErrorKind.ENGINE_NOT_FOUND


def test_locate_skips_broken_binary(tmp_path):
    broken = tmp_path / "ffmpeg"
    broken.write_text("#!/bin/sh\n")
    broken.chmod(0o755)
    with patch("shutil.which", return_value=None), \
            patch("vidsqueeze.infrastructure.ffmpeg.ENGINE_CANDIDATES", []), \
            patch("subprocess.run", return_value=MagicMock(returncode=1)):
        with pytest.raises(CompressionError):
            FFmpegAdapter.locate(str(broken))
