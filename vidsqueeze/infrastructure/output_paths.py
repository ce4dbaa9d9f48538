from pathlib import Path
from typing import Collection

OUTPUT_EXTENSION = ".mp4"


def generate_output_path(input_path: Path, suffix: str = "_compressed", reserved: Collection[Path] = ()) -> Path:
    """'<dir>/<stem><suffix>.mp4', or '<stem><suffix> (N).mp4' when taken.

    A candidate is taken when it exists on disk or is in `reserved`
    (outputs claimed by runs still in flight).
    """
    directory = input_path.parent
    base = f"{input_path.stem}{suffix}"
    candidate = directory / f"{base}{OUTPUT_EXTENSION}"
    counter = 1
    while candidate.exists() or candidate in reserved:
        candidate = directory / f"{base} ({counter}){OUTPUT_EXTENSION}"
        counter += 1
    return candidate


def temporary_output_path(output_path: Path) -> Path:
    """In-progress file; renamed to output_path on success."""
    return output_path.with_suffix(".tmp")
