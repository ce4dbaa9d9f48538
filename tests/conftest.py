import pytest
import subprocess
import threading
from pathlib import Path
from typing import List, Optional
from unittest.mock import patch
from vidsqueeze.config.models import AppConfig, CompressionSettings
from vidsqueeze.domain.models import VideoFile
from vidsqueeze.infrastructure.event_bus import EventBus
from vidsqueeze.infrastructure.ffmpeg import FFmpegAdapter
from vidsqueeze.pipeline.supervisor import ProcessSupervisor

# ============================================================================
# Fake engine process
# ============================================================================

class FakeProcess:
    """Stand-in for a subprocess.Popen running ffmpeg.

    Emits `lines` on stderr, then either exits with `returncode` right away
    or, when `block` is set, keeps running until release()/terminate()/kill().
    On exit code 0 the output file (last command argument) is written.
    """

    _pid = 40000

    def __init__(
        self,
        cmd: List[str],
        lines=(),
        returncode: int = 0,
        block: bool = False,
        exit_code_on_terminate: int = 255,
        ignore_terminate: bool = False,
        write_output: Optional[bytes] = b"\x00" * 400,
    ):
        FakeProcess._pid += 1
        self.pid = FakeProcess._pid
        self.args = cmd
        self.lines = list(lines)
        self.final_code = returncode
        self.exit_code_on_terminate = exit_code_on_terminate
        self.ignore_terminate = ignore_terminate
        self.write_output = write_output
        self.returncode = None
        self.terminate_calls = 0
        self.kill_calls = 0
        self._lock = threading.Lock()
        self._done = threading.Event()
        self.stderr = self._stream()
        if not block:
            self._finish(returncode)

    def _stream(self):
        for line in self.lines:
            yield line + "\n"
        self._done.wait()

    def _finish(self, code: int):
        with self._lock:
            if self.returncode is not None:
                return
            if code == 0 and self.write_output is not None:
                Path(self.args[-1]).write_bytes(self.write_output)
            self.returncode = code
        self._done.set()

    def release(self, code: Optional[int] = None):
        self._finish(self.final_code if code is None else code)

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if not self._done.wait(timeout):
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode

    def terminate(self):
        self.terminate_calls += 1
        if not self.ignore_terminate:
            self._finish(self.exit_code_on_terminate)

    def kill(self):
        self.kill_calls += 1
        self._finish(-9)


class FakePopenFactory:
    """Side effect for a patched subprocess.Popen; hands out queued FakeProcess specs in order."""

    def __init__(self):
        self.specs = []
        self.processes: List[FakeProcess] = []
        self.mock = None

    def queue(self, **spec):
        self.specs.append(spec)
        return self

    def __call__(self, cmd, **kwargs):
        spec = self.specs.pop(0) if self.specs else {}
        process = FakeProcess(cmd, **spec)
        self.processes.append(process)
        return process


def progress_lines(*seconds: float) -> List[str]:
    """-progress output reporting the given media positions."""
    lines = []
    for value in seconds:
        lines.extend([f"out_time_us={int(value * 1_000_000)}", "speed=2.0x", "progress=continue"])
    return lines


@pytest.fixture
def fake_popen():
    factory = FakePopenFactory()
    with patch("subprocess.Popen", side_effect=factory) as mock_popen:
        factory.mock = mock_popen
        yield factory
    for process in factory.processes:
        process.release()

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Software encoding so no encoder probing happens."""
    return CompressionSettings(codec="h264", crf=23, use_hardware_acceleration=False)


@pytest.fixture
def sample_config():
    """Returns a sample AppConfig object for testing."""
    return AppConfig(
        general={"extensions": [".mp4", ".mov", ".mkv"], "min_size_bytes": 1},
        compression={"codec": "h264", "crf": 23, "use_hardware_acceleration": False},
        queue={"concurrency": 1, "max_retries": 0, "cancel_grace_period_s": 0.2},
    )


@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()


@pytest.fixture
def supervisor():
    return ProcessSupervisor(FFmpegAdapter(binary="ffmpeg", platform="linux"), ffprobe=None, grace_period_s=0.2)

# ============================================================================
# File System Fixtures
# ============================================================================

@pytest.fixture
def make_video_file(tmp_path):
    """Factory creating a small source file on disk and its VideoFile."""
    def _make(name: str = "clip.mp4", size: int = 1000, duration: float = 10.0, directory: Optional[Path] = None) -> VideoFile:
        target_dir = directory or tmp_path
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        path.write_bytes(b"\x01" * size)
        return VideoFile.from_path(path, duration=duration)
    return _make

# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
