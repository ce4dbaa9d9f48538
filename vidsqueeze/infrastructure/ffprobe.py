import subprocess
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from vidsqueeze.domain.errors import CompressionError, ErrorKind

PROBE_TIMEOUT_S = 10

class FFprobeAdapter:
    """Wrapper around ffprobe; used to learn the duration progress is measured against."""

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary or "ffprobe"
        self.logger = logging.getLogger(__name__)

    @classmethod
    def beside(cls, ffmpeg_binary: str) -> "FFprobeAdapter":
        """ffprobe usually ships next to ffmpeg."""
        path = Path(ffmpeg_binary)
        if path.name.startswith("ffmpeg"):
            return cls(str(path.with_name(path.name.replace("ffmpeg", "ffprobe", 1))))
        return cls()

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _parse_clock(value: Any) -> float:
        """'HH:MM:SS.fff' or 'MM:SS' tags (Matroska DURATION)."""
        if value is None:
            return 0.0
        parts = str(value).strip().split(":")
        if len(parts) not in (2, 3):
            return FFprobeAdapter._to_float(value)
        try:
            numbers = [float(p) for p in parts]
        except ValueError:
            return 0.0
        seconds = 0.0
        for number in numbers:
            seconds = seconds * 60 + number
        return seconds

    def probe(self, file_path: Path) -> Dict[str, Any]:
        """Executes ffprobe and returns its parsed JSON."""
        cmd = [
            self.binary,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path)
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT_S)
        except FileNotFoundError as exc:
            raise CompressionError(ErrorKind.ENGINE_NOT_FOUND, self.binary) from exc
        except subprocess.TimeoutExpired as exc:
            raise CompressionError(
                ErrorKind.INVALID_INPUT, f"metadata probe timed out for {file_path.name}"
            ) from exc

        if result.returncode != 0:
            raise CompressionError(
                ErrorKind.INVALID_INPUT,
                f"ffprobe failed for {file_path.name}: {result.stderr.strip() or result.returncode}"
            )
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise CompressionError(ErrorKind.INVALID_INPUT, f"unreadable metadata for {file_path.name}") from exc
        if not data.get("streams"):
            raise CompressionError(ErrorKind.INVALID_INPUT, f"no streams found in {file_path.name}")
        return data

    def get_duration(self, file_path: Path) -> float:
        """Duration in seconds (0.0 when the container does not say)."""
        data = self.probe(file_path)
        fmt = data.get("format", {}) or {}
        video_stream = next((s for s in data["streams"] if s.get("codec_type") == "video"), None)
        if video_stream is None:
            raise CompressionError(ErrorKind.UNSUPPORTED_FORMAT, f"no video stream in {file_path.name}")

        # format.duration, format tags, stream.duration, stream tags
        duration = self._to_float(fmt.get("duration"))
        if duration <= 0:
            tags = fmt.get("tags", {}) or {}
            duration = self._parse_clock(tags.get("DURATION") or tags.get("duration"))
        if duration <= 0:
            duration = self._to_float(video_stream.get("duration"))
        if duration <= 0:
            tags = video_stream.get("tags", {}) or {}
            duration = self._parse_clock(tags.get("DURATION") or tags.get("duration"))

        self.logger.debug(f"FFPROBE: {file_path.name} duration={duration:.2f}s")
        return max(0.0, duration)
