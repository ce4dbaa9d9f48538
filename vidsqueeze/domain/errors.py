"""Closed error taxonomy for compression runs.

Every failure that reaches decision logic is a `CompressionError` whose `kind`
selects a row of `ERROR_TABLE`. Code, user-facing message, recovery hint and
retryability live only in that table.
"""

import errno
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Union


class ErrorKind(str, Enum):
    ENGINE_NOT_FOUND = "engine_not_found"
    UNSUPPORTED_FORMAT = "unsupported_format"
    COMPRESSION_FAILED = "compression_failed"
    FILE_NOT_FOUND = "file_not_found"
    INSUFFICIENT_SPACE = "insufficient_space"
    CANCELLED = "cancelled"
    INVALID_INPUT = "invalid_input"
    OUTPUT_PATH_ERROR = "output_path_error"
    PERMISSION_DENIED = "permission_denied"
    NETWORK_ERROR = "network_error"
    CORRUPTED_FILE = "corrupted_file"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorInfo:
    code: int
    message: str
    recovery_hint: Optional[str]
    retryable: bool


ERROR_TABLE: Dict[ErrorKind, ErrorInfo] = {
    ErrorKind.ENGINE_NOT_FOUND: ErrorInfo(
        1001, "FFmpeg executable not found",
        "Install FFmpeg or set general.ffmpeg_path in the config", False),
    ErrorKind.UNSUPPORTED_FORMAT: ErrorInfo(
        1002, "Unsupported video format: {detail}",
        "Convert the file to a supported format and try again", False),
    ErrorKind.COMPRESSION_FAILED: ErrorInfo(
        1003, "Compression failed: {detail}",
        "Check the compression settings and try again", True),
    ErrorKind.FILE_NOT_FOUND: ErrorInfo(
        1004, "File not found: {detail}",
        "Make sure the file exists and has not been moved", True),
    ErrorKind.INSUFFICIENT_SPACE: ErrorInfo(
        1005, "Not enough disk space to write the compressed file",
        "Free up disk space and try again", True),
    ErrorKind.CANCELLED: ErrorInfo(
        1006, "Operation cancelled by user", None, False),
    ErrorKind.INVALID_INPUT: ErrorInfo(
        1007, "Invalid input file: {detail}",
        "Choose a valid video file", False),
    ErrorKind.OUTPUT_PATH_ERROR: ErrorInfo(
        1008, "Cannot create output file: {detail}",
        "Check write permissions for the destination folder", True),
    ErrorKind.PERMISSION_DENIED: ErrorInfo(
        1009, "Permission denied: {detail}",
        "Grant read/write access to the file", True),
    ErrorKind.NETWORK_ERROR: ErrorInfo(
        1010, "Network error: {detail}",
        "Check the network connection", True),
    ErrorKind.CORRUPTED_FILE: ErrorInfo(
        1011, "Corrupted file: {detail}",
        "Try a different file", True),
    ErrorKind.UNKNOWN: ErrorInfo(
        1999, "Unknown error: {detail}",
        "Restart the application and try again", True),
}


class CompressionError(Exception):
    """A failure classified into the closed `ErrorKind` taxonomy.

    `args` is always `(kind, detail)` so instances survive copy/pickle.
    """

    def __init__(self, kind: Union[ErrorKind, str], detail: Optional[str] = None):
        kind = ErrorKind(kind)
        super().__init__(kind, detail)
        self.kind = kind
        self.detail = detail

    @property
    def info(self) -> ErrorInfo:
        return ERROR_TABLE[self.kind]

    @property
    def code(self) -> int:
        return self.info.code

    @property
    def retryable(self) -> bool:
        return self.info.retryable

    @property
    def recovery_hint(self) -> Optional[str]:
        return self.info.recovery_hint

    @property
    def message(self) -> str:
        template = self.info.message
        if "{detail}" in template:
            return template.format(detail=self.detail or "no details")
        return template

    def describe(self) -> str:
        """Message plus recovery hint, for end-user output."""
        if self.recovery_hint:
            return f"{self.message}. {self.recovery_hint}"
        return self.message

    @classmethod
    def from_os_error(cls, exc: OSError, path: Optional[Union[Path, str]] = None) -> "CompressionError":
        """Maps a filesystem error onto the taxonomy."""
        detail = str(path) if path is not None else (exc.filename or str(exc))
        if isinstance(exc, FileNotFoundError):
            return cls(ErrorKind.FILE_NOT_FOUND, detail)
        if isinstance(exc, PermissionError):
            return cls(ErrorKind.PERMISSION_DENIED, detail)
        if exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
            return cls(ErrorKind.INSUFFICIENT_SPACE, detail)
        if exc.errno in (errno.EROFS, errno.EEXIST):
            return cls(ErrorKind.OUTPUT_PATH_ERROR, detail)
        return cls(ErrorKind.UNKNOWN, f"{detail}: {exc.strerror or exc}")

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"CompressionError({self.kind.value!r}, {self.detail!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CompressionError):
            return NotImplemented
        return self.kind == other.kind and self.detail == other.detail

    def __hash__(self) -> int:
        return hash((self.kind, self.detail))
