from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from exam_pipeline.workflow.chunking import count_words

MIN_FILE_BYTES = 100
MAX_FILE_BYTES = 50 * 1024 * 1024
LARGE_FILE_BYTES = 10 * 1024 * 1024
MIN_WORDS = 50


@dataclass
class TranscriptCheck:
    """Pre-flight verdict for one transcript file."""

    path: Path
    ok: bool
    message: str = ""
    warnings: List[str] = field(default_factory=list)
    size_bytes: int = 0
    word_count: int = 0


def check_transcript(path: str | Path, text: Optional[str] = None) -> TranscriptCheck:
    """Structural checks before a transcript enters the pipeline.

    Oversized or undersized files are rejected; large files and very short
    transcripts only produce warnings.
    """
    path = Path(path)
    if not path.exists():
        return TranscriptCheck(path, False, f"file not found: {path}")
    if not path.is_file():
        return TranscriptCheck(path, False, f"not a regular file: {path}")

    size = path.stat().st_size
    if size < MIN_FILE_BYTES:
        return TranscriptCheck(path, False, f"file too small ({size} bytes, minimum {MIN_FILE_BYTES})", size_bytes=size)
    if size > MAX_FILE_BYTES:
        return TranscriptCheck(path, False, f"file too large ({size} bytes, maximum {MAX_FILE_BYTES})", size_bytes=size)

    warnings: List[str] = []
    if size > LARGE_FILE_BYTES:
        warnings.append(f"large file ({size // (1024 * 1024)} MB), processing may be slow and costly")
    if text is None:
        text = path.read_text(encoding="utf-8")
    words = count_words(text)
    if words < MIN_WORDS:
        warnings.append(f"very short transcript ({words} words)")
    return TranscriptCheck(path, True, "ok", warnings, size_bytes=size, word_count=words)


def list_transcripts(directory: str | Path, pattern: str = "*.txt") -> List[Path]:
    root = Path(directory)
    if not root.is_dir():
        return []
    return sorted(path for path in root.glob(pattern) if path.is_file())


__all__ = ["TranscriptCheck", "check_transcript", "list_transcripts"]
