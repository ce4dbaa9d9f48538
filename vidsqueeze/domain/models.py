import uuid
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Optional
from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator
from vidsqueeze.domain.errors import CompressionError, ErrorKind


class CompressionStatus(str, Enum):
    PENDING = "PENDING"
    COMPRESSING = "COMPRESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        return self is CompressionStatus.COMPRESSING

    @property
    def is_finished(self) -> bool:
        """Terminal for the current run (completed, failed or cancelled)."""
        return self in _TERMINAL

    @property
    def is_successful(self) -> bool:
        return self is CompressionStatus.COMPLETED

    @property
    def is_failure(self) -> bool:
        return self is CompressionStatus.FAILED

    @property
    def display_text(self) -> str:
        return _DISPLAY_TEXT[self]


_TERMINAL = frozenset({
    CompressionStatus.COMPLETED,
    CompressionStatus.FAILED,
    CompressionStatus.CANCELLED,
})

_DISPLAY_TEXT = {
    CompressionStatus.PENDING: "Pending",
    CompressionStatus.COMPRESSING: "Compressing",
    CompressionStatus.COMPLETED: "Completed",
    CompressionStatus.FAILED: "Failed",
    CompressionStatus.CANCELLED: "Cancelled",
}

# Terminal -> PENDING is only reachable through VideoFile.reset_for_retry().
ALLOWED_TRANSITIONS: Dict[CompressionStatus, FrozenSet[CompressionStatus]] = {
    CompressionStatus.PENDING: frozenset({
        CompressionStatus.COMPRESSING,
        CompressionStatus.FAILED,
        CompressionStatus.CANCELLED,
    }),
    CompressionStatus.COMPRESSING: _TERMINAL,
    CompressionStatus.COMPLETED: frozenset(),
    CompressionStatus.FAILED: frozenset(),
    CompressionStatus.CANCELLED: frozenset(),
}


class InvalidTransitionError(ValueError):
    def __init__(self, current: CompressionStatus, target: CompressionStatus):
        super().__init__(f"Invalid status transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def format_size(size: Optional[int]) -> str:
    if size is None:
        return "-"
    value = float(size)
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(value) < 1024.0:
            return f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} TB"


def format_duration(seconds: float) -> str:
    total = int(seconds)
    return f"{total // 60}:{total % 60:02d}"


class VideoFile(BaseModel):
    """One queue item and its per-run compression state.

    Status, progress, compressed size and error change only through the
    transition methods below, which enforce `ALLOWED_TRANSITIONS`.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, frozen=True)
    path: Path = Field(frozen=True)
    name: str = ""
    duration: float = Field(default=0.0, ge=0.0)
    original_size: int = Field(gt=0, frozen=True)
    compressed_size: Optional[int] = Field(default=None, ge=0)
    compression_progress: float = Field(default=0.0, ge=0.0, le=1.0)
    status: CompressionStatus = CompressionStatus.PENDING
    error: Optional[CompressionError] = None

    @model_validator(mode="after")
    def default_name(self):
        if not self.name:
            self.name = self.path.name
        return self

    @field_serializer("error")
    def serialize_error(self, error: Optional[CompressionError]):
        if error is None:
            return None
        return {"kind": error.kind.value, "code": error.code, "message": error.message}

    @classmethod
    def from_path(cls, path: Path, duration: float = 0.0) -> "VideoFile":
        """Creates a pending item from a file on disk."""
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise CompressionError.from_os_error(exc, path) from exc
        if size <= 0:
            raise CompressionError(ErrorKind.INVALID_INPUT, f"{path} is empty")
        return cls(path=path, original_size=size, duration=duration)

    # -- transitions -------------------------------------------------------

    def _transition(self, target: CompressionStatus):
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status, target)
        self.status = target

    def mark_compressing(self):
        self._transition(CompressionStatus.COMPRESSING)
        self.compression_progress = 0.0

    def update_progress(self, value: float) -> bool:
        """Applies a progress fraction; returns False if it was ignored."""
        if self.status is not CompressionStatus.COMPRESSING:
            return False
        value = min(1.0, max(0.0, float(value)))
        if value < self.compression_progress:
            return False
        self.compression_progress = value
        return True

    def mark_completed(self, compressed_size: int):
        if self.compressed_size is not None:
            raise ValueError(f"compressed_size already set for {self.name}")
        if compressed_size < 0:
            raise ValueError("compressed_size must be >= 0")
        self._transition(CompressionStatus.COMPLETED)
        self.compressed_size = compressed_size
        self.compression_progress = 1.0

    def mark_failed(self, error: CompressionError):
        if error.kind is ErrorKind.CANCELLED:
            # Cancellation is a state of its own, never a failure reason.
            self.mark_cancelled()
            return
        self._transition(CompressionStatus.FAILED)
        self.error = error

    def mark_cancelled(self):
        self._transition(CompressionStatus.CANCELLED)

    def reset_for_retry(self):
        if not self.status.is_finished:
            raise InvalidTransitionError(self.status, CompressionStatus.PENDING)
        self.status = CompressionStatus.PENDING
        self.compression_progress = 0.0
        self.compressed_size = None
        self.error = None

    def snapshot(self) -> "VideoFile":
        """Detached copy for presentation code."""
        return self.model_copy(deep=True)

    # -- derived -----------------------------------------------------------

    @property
    def compression_ratio(self) -> Optional[float]:
        """Percentage saved, or None until a compressed size exists."""
        if self.compressed_size is None or self.original_size <= 0:
            return None
        return (1.0 - self.compressed_size / self.original_size) * 100.0

    @property
    def is_compressed_larger(self) -> bool:
        if self.compressed_size is None:
            return False
        return self.compressed_size > self.original_size

    @property
    def formatted_duration(self) -> str:
        return format_duration(self.duration)

    @property
    def formatted_original_size(self) -> str:
        return format_size(self.original_size)

    @property
    def formatted_compressed_size(self) -> str:
        return format_size(self.compressed_size)

    @property
    def formatted_compression_ratio(self) -> str:
        ratio = self.compression_ratio
        if ratio is None:
            return "-"
        return f"{ratio:.1f}%"
