import os
import re
import shutil
import subprocess
import sys
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional
from vidsqueeze.config.models import CompressionSettings
from vidsqueeze.domain.errors import CompressionError, ErrorKind

# Fallback locations when the binary is not on PATH
ENGINE_CANDIDATES = [
    "/opt/homebrew/bin/ffmpeg",  # Homebrew on Apple Silicon
    "/usr/local/bin/ffmpeg",
    "/usr/bin/ffmpeg",
]

# Legacy stats line: 'time=00:01:23.45'
TIME_REGEX = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
# -progress key/value lines; both keys carry microseconds
PROGRESS_KEY_REGEX = re.compile(r"^out_time_(?:us|ms)=(\d+)\s*$")


def parse_progress_seconds(line: str) -> Optional[float]:
    """Extracts the processed media position (seconds) from one engine line."""
    match = PROGRESS_KEY_REGEX.match(line.strip())
    if match:
        return int(match.group(1)) / 1_000_000.0
    match = TIME_REGEX.search(line)
    if match:
        h, m, s = match.groups()
        return int(h) * 3600 + int(m) * 60 + float(s)
    return None


def parse_progress_line(line: str, total_duration: float) -> Optional[float]:
    """Progress fraction in [0, 1] for one engine line, or None."""
    if total_duration <= 0:
        return None
    seconds = parse_progress_seconds(line)
    if seconds is None or seconds <= 0:
        return None
    return min(1.0, seconds / total_duration)


class FFmpegAdapter:
    """Wrapper around the ffmpeg executable: discovery, commands, spawning."""

    def __init__(self, binary: Optional[str] = None, platform: Optional[str] = None):
        self.binary = binary or "ffmpeg"
        self.platform = platform or sys.platform
        self.logger = logging.getLogger(__name__)
        self._encoder_cache: Dict[str, bool] = {}
        self._encoder_lock = threading.Lock()

    @classmethod
    def locate(cls, configured: Optional[str] = None, platform: Optional[str] = None) -> "FFmpegAdapter":
        """Finds a working engine binary or raises engine_not_found."""
        candidates: List[str] = []
        if configured:
            candidates.append(configured)
        found = shutil.which("ffmpeg")
        if found:
            candidates.append(found)
        candidates.extend(ENGINE_CANDIDATES)

        logger = logging.getLogger(__name__)
        for candidate in candidates:
            if not os.path.isfile(candidate) or not os.access(candidate, os.X_OK):
                continue
            if cls._responds(candidate):
                logger.info(f"FFMPEG_FOUND: {candidate}")
                return cls(binary=candidate, platform=platform)
            logger.warning(f"FFMPEG_BROKEN: {candidate} did not answer -version")
        raise CompressionError(ErrorKind.ENGINE_NOT_FOUND)

    @staticmethod
    def _responds(binary: str) -> bool:
        try:
            result = subprocess.run([binary, "-version"], capture_output=True, timeout=10)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0

    def is_encoder_available(self, encoder: str) -> bool:
        """Checks `ffmpeg -encoders` once per encoder name."""
        with self._encoder_lock:
            if encoder in self._encoder_cache:
                return self._encoder_cache[encoder]
        try:
            result = subprocess.run(
                [self.binary, "-hide_banner", "-encoders"],
                capture_output=True, text=True, timeout=10
            )
            available = result.returncode == 0 and encoder in result.stdout
        except (OSError, subprocess.TimeoutExpired) as exc:
            self.logger.warning(f"Failed to query encoders: {exc}")
            available = False
        with self._encoder_lock:
            self._encoder_cache[encoder] = available
        return available

    def video_parameters(self, settings: CompressionSettings) -> List[str]:
        """Encoder selection: hardware when preferred and present, else software."""
        if settings.use_hardware_acceleration:
            hw_encoder = settings.codec.hardware_encoder(self.platform)
            if hw_encoder and self.is_encoder_available(hw_encoder):
                self.logger.info(f"Using hardware encoder {hw_encoder}")
                return ["-c:v", hw_encoder, settings.codec.hardware_quality_flag(self.platform), str(settings.crf)]
            if hw_encoder:
                self.logger.warning(
                    f"Hardware encoder {hw_encoder} not available, falling back to {settings.codec.ffmpeg_value}"
                )
        return settings.software_video_parameters

    def build_command(self, input_path: Path, output_path: Path, settings: CompressionSettings) -> List[str]:
        """Constructs the ffmpeg command line; output_path is written as MP4."""
        cmd = [
            self.binary,
            "-hide_banner",
            "-nostdin",
            "-y",  # Overwrite output files
            "-i", str(input_path),
        ]
        cmd.extend(self.video_parameters(settings))
        cmd.extend(settings.audio_codec_parameters)
        cmd.extend([
            "-progress", "pipe:2",
            "-stats_period", "0.5",
        ])
        # The .tmp extension does not indicate a format, so force mp4
        cmd.extend(["-f", "mp4", str(output_path)])
        return cmd

    def spawn(self, cmd: List[str]) -> subprocess.Popen:
        """Starts the engine with stderr piped as text lines.

        Runs in its own session so terminal signals reach only the supervisor.
        """
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            universal_newlines=True,
            bufsize=1,
            start_new_session=True,
        )
