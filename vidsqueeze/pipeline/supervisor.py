"""Supervision of a single engine run.

A run is one ffmpeg process compressing one VideoFile. The supervisor
launches it after pre-flight checks, streams its progress, honours
cancellation (SIGTERM, then SIGKILL after a grace period) and classifies
the exit into exactly one `Outcome`.

Classification is driven by the run's cancellation flag, not by the exit
code: a process the supervisor terminated itself exits with a code
(255, -15, -9, ...) that is indistinguishable from an external kill.
Once `cancel()` has set the flag, the run resolves to cancelled whatever
the code. Without the flag, every non-zero code is a failure mapped via
`EXIT_CODE_ERRORS`.

The supervisor never touches VideoFile.status; the Scheduler applies the
Outcome.
"""

import os
import re
import shutil
import logging
import subprocess
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Deque, Dict, Iterator, List, Optional
from vidsqueeze.config.models import CompressionSettings
from vidsqueeze.domain.errors import CompressionError, ErrorKind
from vidsqueeze.domain.models import VideoFile
from vidsqueeze.infrastructure.ffmpeg import FFmpegAdapter, parse_progress_line
from vidsqueeze.infrastructure.ffprobe import FFprobeAdapter
from vidsqueeze.infrastructure.output_paths import temporary_output_path

DEFAULT_GRACE_PERIOD_S = 3.0
PROGRESS_STEP = 0.005  # Smaller progress changes are not reported
DIAGNOSTIC_LINES = 20

# Engine exit codes -> failure kind. Unlisted codes map to UNKNOWN.
EXIT_CODE_ERRORS: Dict[int, ErrorKind] = {
    1: ErrorKind.COMPRESSION_FAILED,    # generic ffmpeg error
    2: ErrorKind.INVALID_INPUT,         # invalid arguments
    187: ErrorKind.COMPRESSION_FAILED,  # hardware encoder capability limit
    255: ErrorKind.COMPRESSION_FAILED,  # ffmpeg exit after an external signal
}

# Platform-dependent codes commonly produced by SIGTERM/SIGKILL.
# Only consulted when no cancellation flag exists for the run.
TERMINATION_SIGNAL_CODES = frozenset({255, -15, -9, 137, 143})

# -progress key=value lines and legacy stats lines; not diagnostics
_PROGRESS_NOISE = re.compile(r"^(\w+=\S*|frame=.*|size=.*)$")


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    compressed_size: Optional[int] = None
    error: Optional[CompressionError] = None
    exit_code: Optional[int] = None

    @classmethod
    def completed(cls, compressed_size: Optional[int], exit_code: Optional[int] = 0) -> "Outcome":
        return cls(OutcomeKind.COMPLETED, compressed_size=compressed_size, exit_code=exit_code)

    @classmethod
    def failed(cls, error: CompressionError, exit_code: Optional[int] = None) -> "Outcome":
        return cls(OutcomeKind.FAILED, error=error, exit_code=exit_code)

    @classmethod
    def cancelled(cls, exit_code: Optional[int] = None) -> "Outcome":
        return cls(OutcomeKind.CANCELLED, exit_code=exit_code)

    @property
    def is_completed(self) -> bool:
        return self.kind is OutcomeKind.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.kind is OutcomeKind.FAILED

    @property
    def is_cancelled(self) -> bool:
        return self.kind is OutcomeKind.CANCELLED


def looks_like_termination_signal(returncode: int) -> bool:
    """Heuristic only; signal exit codes vary by platform and engine build."""
    return returncode in TERMINATION_SIGNAL_CODES


def error_for_exit_code(returncode: int, diagnostics: Optional[str] = None) -> CompressionError:
    kind = EXIT_CODE_ERRORS.get(returncode, ErrorKind.UNKNOWN)
    detail = f"ffmpeg exited with code {returncode}"
    if diagnostics:
        detail = f"{detail}: {diagnostics}"
    return CompressionError(kind, detail)


def classify_exit(returncode: int, cancel_requested: Optional[bool], diagnostics: Optional[str] = None) -> Outcome:
    """Maps (exit code, cancellation flag) to an Outcome.

    cancel_requested=None means no flag is available for the run; only then
    does the signal-code heuristic apply.
    """
    if cancel_requested:
        return Outcome.cancelled(exit_code=returncode)
    if cancel_requested is None and looks_like_termination_signal(returncode):
        return Outcome.cancelled(exit_code=returncode)
    if returncode == 0:
        return Outcome.completed(None, exit_code=0)
    return Outcome.failed(error_for_exit_code(returncode, diagnostics), exit_code=returncode)


class RunHandle:
    """Shared state of one run, held by both the canceller and the monitor.

    `_lock` guards the cancellation flag and the resolved outcome; the
    progress history has its own condition. Lock order: `_lock` before
    `_progress_cond`.
    """

    def __init__(self, file: VideoFile, process: subprocess.Popen, output_path: Path, total_duration: float, command: List[str]):
        self.run_id = uuid.uuid4().hex
        self.file_id = file.id
        self.file_name = file.name
        self.process = process
        self.output_path = output_path
        self.tmp_path = temporary_output_path(output_path)
        self.total_duration = total_duration
        self.command = command
        self.started_at = time.monotonic()
        self.diagnostics: Deque[str] = deque(maxlen=DIAGNOSTIC_LINES)

        self._lock = threading.Lock()
        self._cancel_requested = False
        self._outcome: Optional[Outcome] = None

        self._progress_cond = threading.Condition()
        self._progress: List[float] = []
        self._stream_closed = False
        self._reader: Optional[threading.Thread] = None

    @property
    def cancel_requested(self) -> bool:
        with self._lock:
            return self._cancel_requested

    @property
    def outcome(self) -> Optional[Outcome]:
        with self._lock:
            return self._outcome

    @property
    def last_progress(self) -> float:
        with self._progress_cond:
            return self._progress[-1] if self._progress else 0.0

    def _request_cancel(self) -> bool:
        """Sets the flag once; False if already set or already resolved."""
        with self._lock:
            if self._cancel_requested or self._outcome is not None:
                return False
            self._cancel_requested = True
            return True

    def _record_progress(self, value: float) -> bool:
        with self._lock:
            if self._cancel_requested or self._outcome is not None:
                return False
            with self._progress_cond:
                if self._stream_closed:
                    return False
                last = self._progress[-1] if self._progress else 0.0
                rising = value - last > PROGRESS_STEP or (value >= 1.0 and last < 1.0)
                if not rising:
                    return False
                self._progress.append(min(1.0, value))
                self._progress_cond.notify_all()
                return True

    def _close_stream(self):
        with self._progress_cond:
            self._stream_closed = True
            self._progress_cond.notify_all()

    def iter_progress(self) -> Iterator[float]:
        """Progress values of this run from the start; ends when the stream closes."""
        index = 0
        while True:
            with self._progress_cond:
                while index >= len(self._progress) and not self._stream_closed:
                    self._progress_cond.wait()
                if index >= len(self._progress):
                    return
                value = self._progress[index]
            index += 1
            yield value

    def diagnostic_text(self) -> str:
        return " | ".join(self.diagnostics)


class ProcessSupervisor:
    """Launches, monitors and cancels engine runs; resolves their Outcome.

    Args:
        ffmpeg: FFmpegAdapter building and spawning the engine command.
        ffprobe: Optional FFprobeAdapter used when a file's duration is unknown.
        grace_period_s: Time between SIGTERM and SIGKILL on cancel.
    """

    def __init__(self, ffmpeg: FFmpegAdapter, ffprobe: Optional[FFprobeAdapter] = None, grace_period_s: float = DEFAULT_GRACE_PERIOD_S):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.grace_period_s = grace_period_s
        self.logger = logging.getLogger(__name__)

    # -- start -------------------------------------------------------------

    def _preflight(self, file: VideoFile, output_path: Path):
        source = Path(file.path)
        if not source.exists():
            raise CompressionError(ErrorKind.FILE_NOT_FOUND, str(source))
        if not source.is_file() or not os.access(source, os.R_OK):
            raise CompressionError(ErrorKind.INVALID_INPUT, f"{source} is not a readable file")

        dest_dir = output_path.parent
        if not dest_dir.is_dir() or not os.access(dest_dir, os.W_OK | os.X_OK):
            raise CompressionError(ErrorKind.OUTPUT_PATH_ERROR, str(dest_dir))
        try:
            free = shutil.disk_usage(dest_dir).free
        except OSError as exc:
            raise CompressionError.from_os_error(exc, dest_dir) from exc
        if free < file.original_size:
            self.logger.warning(
                f"PREFLIGHT_SPACE: {file.name} needs {file.original_size} bytes, {free} free in {dest_dir}"
            )
            raise CompressionError(ErrorKind.INSUFFICIENT_SPACE)

    def _resolve_duration(self, file: VideoFile) -> float:
        if file.duration > 0:
            return file.duration
        if self.ffprobe is None:
            return 0.0
        try:
            return self.ffprobe.get_duration(file.path)
        except CompressionError as exc:
            if exc.kind is not ErrorKind.ENGINE_NOT_FOUND:
                raise
            self.logger.warning(f"ffprobe unavailable ({exc.detail}); no progress for {file.name}")
            return 0.0

    def start(self, file: VideoFile, settings: CompressionSettings, output_path: Path) -> RunHandle:
        """Runs pre-flight checks and launches the engine.

        Raises CompressionError without starting a process when a check
        fails or the engine cannot be launched.
        """
        self._preflight(file, output_path)
        total_duration = self._resolve_duration(file)

        cmd = self.ffmpeg.build_command(file.path, temporary_output_path(output_path), settings)
        self.logger.info(
            f"FFMPEG_START: {file.name} (codec={settings.codec.short_name}, crf={settings.crf}, "
            f"hw={settings.use_hardware_acceleration}, duration={total_duration:.1f}s)"
        )
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        try:
            process = self.ffmpeg.spawn(cmd)
        except FileNotFoundError as exc:
            raise CompressionError(ErrorKind.ENGINE_NOT_FOUND, self.ffmpeg.binary) from exc
        except PermissionError as exc:
            raise CompressionError(ErrorKind.PERMISSION_DENIED, self.ffmpeg.binary) from exc
        except OSError as exc:
            raise CompressionError(ErrorKind.COMPRESSION_FAILED, f"process execution failed: {exc}") from exc

        handle = RunHandle(file, process, output_path, total_duration, cmd)
        reader = threading.Thread(
            target=self._read_output, args=(handle,), name=f"ffmpeg-reader-{handle.run_id[:8]}", daemon=True
        )
        handle._reader = reader
        reader.start()
        return handle

    def _read_output(self, handle: RunHandle):
        process = handle.process
        try:
            if process.stderr is not None:
                for raw_line in process.stderr:
                    line = raw_line.strip()
                    if not line:
                        continue
                    fraction = parse_progress_line(line, handle.total_duration)
                    if fraction is not None:
                        handle._record_progress(fraction)
                    elif not _PROGRESS_NOISE.match(line):
                        handle.diagnostics.append(line)
            returncode = process.wait()
            if returncode == 0:
                handle._record_progress(1.0)
        except (OSError, ValueError) as exc:
            # Pipe closed underneath us during a forced kill
            self.logger.debug(f"FFMPEG_READER: {handle.file_name} stream ended: {exc}")
        finally:
            handle._close_stream()

    # -- progress / cancel -------------------------------------------------

    def progress(self, handle: RunHandle) -> Iterator[float]:
        """Lazy, non-decreasing progress fractions of one run.

        Blocks between values; finishes when the engine's output closes.
        Each call replays the run from its first value.
        """
        return handle.iter_progress()

    def cancel(self, handle: RunHandle) -> bool:
        """Requests cancellation of a run. Idempotent and non-blocking.

        Returns True only for the call that set the cancellation flag.
        No effect once the run's outcome has been resolved.
        """
        if not handle._request_cancel():
            self.logger.debug(f"FFMPEG_CANCEL: {handle.file_name} already cancelled or resolved")
            return False

        process = handle.process
        self.logger.info(f"FFMPEG_CANCEL: {handle.file_name} (pid={process.pid})")
        if process.poll() is not None:
            self.logger.info(f"FFMPEG_CANCEL: {handle.file_name} already exited")
            return True

        process.terminate()
        threading.Thread(
            target=self._escalate, args=(handle,), name=f"ffmpeg-kill-{handle.run_id[:8]}", daemon=True
        ).start()
        return True

    def _escalate(self, handle: RunHandle):
        try:
            handle.process.wait(timeout=self.grace_period_s)
        except subprocess.TimeoutExpired:
            self.logger.warning(
                f"FFMPEG_KILL: {handle.file_name} still running {self.grace_period_s:.1f}s after SIGTERM, sending SIGKILL"
            )
            handle.process.kill()
            handle.process.wait()

    # -- termination -------------------------------------------------------

    def await_termination(self, handle: RunHandle, timeout: Optional[float] = None) -> Outcome:
        """Blocks until the run exits and returns its (cached) Outcome.

        Raises subprocess.TimeoutExpired if `timeout` elapses first.
        """
        resolved = handle.outcome
        if resolved is not None:
            return resolved

        returncode = handle.process.wait(timeout=timeout)
        if handle._reader is not None:
            handle._reader.join()

        with handle._lock:
            if handle._outcome is not None:
                return handle._outcome
            outcome = classify_exit(returncode, handle._cancel_requested, handle.diagnostic_text())
            if outcome.is_completed:
                outcome = self._finalize_output(handle, returncode)
            else:
                self._discard_output(handle)
            handle._outcome = outcome

        elapsed = time.monotonic() - handle.started_at
        self.logger.info(
            f"FFMPEG_END: {handle.file_name} status={outcome.kind.value} code={returncode} elapsed={elapsed:.2f}s"
        )
        if outcome.is_failed:
            self.logger.error(f"FFMPEG_FAILED: {handle.file_name}: {outcome.error.message}")
        return outcome

    def _finalize_output(self, handle: RunHandle, returncode: int) -> Outcome:
        try:
            os.replace(handle.tmp_path, handle.output_path)
            size = handle.output_path.stat().st_size
        except OSError as exc:
            self._discard_output(handle)
            return Outcome.failed(
                CompressionError(ErrorKind.OUTPUT_PATH_ERROR, f"{handle.output_path.name}: {exc.strerror or exc}"),
                exit_code=returncode,
            )
        return Outcome.completed(size, exit_code=returncode)

    def _discard_output(self, handle: RunHandle):
        try:
            handle.tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            self.logger.warning(f"Could not remove partial output {handle.tmp_path}: {exc}")
