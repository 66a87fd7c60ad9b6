from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from exam_pipeline.errors import ConfigurationError
from exam_pipeline.utils.logging_config import get_logger
from exam_pipeline.utils.types import TextChunk

logger = get_logger(__name__)

# Token estimate: one token per 0.75 words, rounded up. Computed in integers as
# ceil(4 * words / 3) so the same text always yields the same estimate.
WORDS_PER_TOKEN = 0.75

_WORD = re.compile(r"\S+")
_HEADING = re.compile(r"^#{1,6}[ \t]+(\S.*?)[ \t]*$", re.MULTILINE)
_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_SPACE = re.compile(r"[ \t]+\n")
_BLANK_RUNS = re.compile(r"\n{3,}")


def count_words(text: str) -> int:
    return sum(1 for _ in _WORD.finditer(text))


def tokens_for_words(words: int) -> int:
    return (4 * words + 2) // 3


def words_for_tokens(tokens: int) -> int:
    """Largest word count whose estimate still fits ``tokens``."""
    if tokens <= 0:
        return 0
    return (3 * tokens) // 4


def estimate_tokens(text: str) -> int:
    return tokens_for_words(count_words(text))


def truncate_to_token_budget(text: str, max_tokens: int) -> str:
    """Keep the longest prefix of ``text`` whose estimate fits ``max_tokens``.

    The cut lands right after the last retained word, so truncating the result
    again with the same budget returns it unchanged.
    """
    if max_tokens <= 0:
        return ""
    keep = words_for_tokens(max_tokens)
    words = list(_WORD.finditer(text))
    if len(words) <= keep:
        return text
    if keep == 0:
        return ""
    return text[: words[keep - 1].end()]


def clean_text(text: str) -> str:
    """Normalize line endings and control characters before segmentation."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = _TRAILING_SPACE.sub("\n", text)
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip()


@dataclass
class _Unit:
    start: int
    end: int
    words: int
    section_start: bool = False
    heading: Optional[str] = None


class TextSegmenter:
    """Partition a cleaned document into heading-aware, size-bounded chunks.

    Sections start at markdown heading lines and always begin a new chunk.
    Inside a section, blank-line delimited paragraphs are accumulated until the
    next one would push the estimate past ``target_size``; a single paragraph
    larger than the budget is cut at word boundaries. Each chunk after the first
    is prefixed with the last ``overlap`` tokens of the previous chunk's own
    region. Own regions partition the document exactly.
    """

    def __init__(self, target_size: int = 1500, overlap: int = 200) -> None:
        self._validate(target_size, overlap)
        self.target_size = target_size
        self.overlap = overlap

    @staticmethod
    def _validate(target_size: int, overlap: int) -> None:
        if target_size <= 0:
            raise ConfigurationError(f"chunk size must be positive, got {target_size}")
        if overlap < 0:
            raise ConfigurationError(f"chunk overlap must not be negative, got {overlap}")
        if overlap >= target_size:
            raise ConfigurationError(f"chunk overlap ({overlap}) must be smaller than chunk size ({target_size})")

    def _sections(self, document: str) -> Iterator[Tuple[int, int, Optional[str]]]:
        headings = {match.start(): match.group(1) for match in _HEADING.finditer(document)}
        boundaries = sorted({0, *headings})
        for index, start in enumerate(boundaries):
            end = boundaries[index + 1] if index + 1 < len(boundaries) else len(document)
            if start < end:
                yield start, end, headings.get(start)

    def _units(self, document: str, target_size: int) -> List[_Unit]:
        max_words = max(1, words_for_tokens(target_size))
        units: List[_Unit] = []
        for sec_start, sec_end, heading in self._sections(document):
            spans: List[Tuple[int, int]] = []
            pos = sec_start
            for match in _PARAGRAPH_BREAK.finditer(document, sec_start, sec_end):
                spans.append((pos, match.end()))
                pos = match.end()
            if pos < sec_end:
                spans.append((pos, sec_end))

            for span_index, (start, end) in enumerate(spans):
                words = list(_WORD.finditer(document, start, end))
                first = span_index == 0
                if tokens_for_words(len(words)) <= target_size:
                    units.append(_Unit(start, end, len(words), section_start=first, heading=heading))
                    continue
                for offset in range(0, len(words), max_words):
                    piece_start = start if offset == 0 else words[offset].start()
                    following = offset + max_words
                    piece_end = words[following].start() if following < len(words) else end
                    units.append(
                        _Unit(
                            piece_start,
                            piece_end,
                            len(words[offset:following]),
                            section_start=first and offset == 0,
                            heading=heading,
                        )
                    )
        return units

    def _group(self, units: Sequence[_Unit], target_size: int) -> List[Tuple[int, int, _Unit]]:
        groups: List[Tuple[int, int, _Unit]] = []
        first: Optional[_Unit] = None
        end = 0
        words = 0
        for unit in units:
            if first is not None and (unit.section_start or tokens_for_words(words + unit.words) > target_size):
                groups.append((first.start, end, first))
                first = None
            if first is None:
                first = unit
                words = 0
            words += unit.words
            end = unit.end
        if first is not None:
            groups.append((first.start, end, first))
        return groups

    @staticmethod
    def _title(index: int, first: _Unit) -> str:
        if not first.heading:
            return f"Chunk {index}"
        return first.heading if first.section_start else f"{first.heading} (continued)"

    @staticmethod
    def _line_range(document: str, start: int, end: int) -> Tuple[int, int]:
        content_end = start + len(document[start:end].rstrip())
        start_line = document.count("\n", 0, start) + 1
        end_line = document.count("\n", 0, max(start, content_end - 1)) + 1
        return start_line, end_line

    def segment(
        self,
        document: str,
        target_size: Optional[int] = None,
        overlap: Optional[int] = None,
        *,
        source_file: str = "",
    ) -> List[TextChunk]:
        target_size = self.target_size if target_size is None else target_size
        overlap = self.overlap if overlap is None else overlap
        self._validate(target_size, overlap)
        if not document:
            return []

        groups = self._group(self._units(document, target_size), target_size)
        overlap_words = words_for_tokens(overlap)
        chunks: List[TextChunk] = []
        for index, (start, end, first) in enumerate(groups, start=1):
            text_start = start
            if index > 1 and overlap_words:
                prev_start, prev_end, _ = groups[index - 2]
                tail = list(_WORD.finditer(document, prev_start, prev_end))
                take = min(len(tail), overlap_words)
                if take:
                    text_start = tail[-take].start()
            start_line, end_line = self._line_range(document, start, end)
            chunks.append(
                TextChunk(
                    chunk_id=str(index),
                    title=self._title(index, first),
                    text=document[text_start:end],
                    source_file=source_file,
                    start_line=start_line,
                    end_line=end_line,
                    overlap_chars=start - text_start,
                )
            )

        logger.info(
            "Segmented document | source=%s chunks=%s target=%s overlap=%s",
            source_file or "-",
            len(chunks),
            target_size,
            overlap,
        )
        return chunks


def chunk_statistics(chunks: Sequence[TextChunk]) -> Dict[str, float]:
    if not chunks:
        return {"count": 0, "total_tokens": 0, "avg_tokens": 0.0, "min_tokens": 0, "max_tokens": 0}
    sizes = [estimate_tokens(chunk.text) for chunk in chunks]
    return {
        "count": len(chunks),
        "total_tokens": sum(sizes),
        "avg_tokens": round(sum(sizes) / len(sizes), 1),
        "min_tokens": min(sizes),
        "max_tokens": max(sizes),
    }


__all__ = [
    "TextSegmenter",
    "WORDS_PER_TOKEN",
    "chunk_statistics",
    "clean_text",
    "count_words",
    "estimate_tokens",
    "truncate_to_token_budget",
]
