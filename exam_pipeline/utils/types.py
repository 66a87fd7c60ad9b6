from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class TextChunk:
    """Topic-bounded slice of a lesson; the unit of summarization.

    ``overlap_chars`` is the length of the leading part of ``text`` repeated from
    the previous chunk's tail, so ``text[overlap_chars:]`` is the chunk's own region.
    """

    chunk_id: str
    title: str
    text: str
    source_file: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    overlap_chars: int = 0

    @property
    def own_text(self) -> str:
        return self.text[self.overlap_chars:]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TextChunk":
        return cls(
            chunk_id=str(payload["chunk_id"]),
            title=payload.get("title") or f"Chunk {payload['chunk_id']}",
            text=payload.get("text") or "",
            source_file=payload.get("source_file") or "",
            start_line=payload.get("start_line"),
            end_line=payload.get("end_line"),
            overlap_chars=int(payload.get("overlap_chars") or 0),
        )


@dataclass(frozen=True)
class StageResult:
    """Outcome of one generation call: ``Ok(output)`` or ``Degraded(output, reason)``."""

    output: Any
    degraded: bool = False
    reason: Optional[str] = None

    @classmethod
    def ok(cls, output: Any) -> "StageResult":
        return cls(output=output)

    @classmethod
    def degrade(cls, output: Any, reason: str) -> "StageResult":
        return cls(output=output, degraded=True, reason=reason)


@dataclass
class FileResult:
    """Per-file outcome collected by the batch aggregator."""

    filename: str
    status: str
    duration_ms: int = 0
    cost: float = 0.0
    error_message: Optional[str] = None
    chunks_created: int = 0
    summaries_created: int = 0
    outputs_generated: List[str] = field(default_factory=list)
    degraded_outputs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
