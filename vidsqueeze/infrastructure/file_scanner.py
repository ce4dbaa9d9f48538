import os
import logging
from pathlib import Path
from typing import Generator, Iterable, List
from vidsqueeze.domain.errors import CompressionError
from vidsqueeze.domain.models import VideoFile

class FileScanner:
    """Expands files and directories into VideoFile queue items."""

    def __init__(self, extensions: List[str], min_size_bytes: int = 1, output_suffix: str = "_compressed", recursive: bool = True):
        self.extensions = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]
        self.min_size_bytes = min_size_bytes
        self.output_suffix = output_suffix
        self.recursive = recursive
        self.logger = logging.getLogger(__name__)

    def is_candidate(self, path: Path) -> bool:
        if path.suffix.lower() not in self.extensions:
            return False
        # Skip our own outputs ("clip_compressed.mp4", "clip_compressed (2).mp4")
        stem = path.stem
        if stem.endswith(self.output_suffix) or f"{self.output_suffix} (" in stem:
            return False
        return True

    def _walk(self, root_dir: Path) -> Generator[Path, None, None]:
        if not self.recursive:
            for entry in sorted(root_dir.iterdir()):
                if entry.is_file():
                    yield entry
            return
        for root, dirs, files in os.walk(str(root_dir)):
            # Ensure deterministic traversal: sort directories and files
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            for file_name in sorted(files):
                yield Path(root) / file_name

    def scan(self, paths: Iterable[Path]) -> Generator[VideoFile, None, None]:
        """Yields one VideoFile per matching file; explicit files skip the extension filter."""
        seen = set()
        for raw in paths:
            path = Path(raw).expanduser()
            if path.is_dir():
                candidates = (p for p in self._walk(path) if self.is_candidate(p))
            else:
                candidates = iter([path])

            for file_path in candidates:
                key = file_path.resolve()
                if key in seen:
                    continue
                seen.add(key)
                try:
                    video = VideoFile.from_path(file_path)
                except CompressionError as exc:
                    self.logger.warning(f"SCAN_SKIP: {file_path} ({exc})")
                    continue
                if video.original_size < self.min_size_bytes:
                    self.logger.debug(f"SCAN_SKIP: {file_path} below min size")
                    continue
                yield video
