from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional, Sequence

from exam_pipeline.utils.logging_config import get_logger
from exam_pipeline.utils.rate_limit import FixedIntervalGate
from exam_pipeline.utils.types import StageResult, TextChunk
from exam_pipeline.workflow.chunking import truncate_to_token_budget
from exam_pipeline.workflow.fallback import run_stage
from exam_pipeline.workflow.llm import GenerationGateway, extract_json
from exam_pipeline.workflow.utils.prompts import SUMMARY_SYSTEM_PROMPT, summary_user_prompt
from exam_pipeline.workflow.utils.summary_models import ChunkSummary, Confidence

logger = get_logger(__name__)


class ChunkSummarizer:
    """Summarize StageProcessor: one gateway call per chunk, low-confidence fallback on failure."""

    def __init__(
        self,
        gateway: Optional[GenerationGateway],
        *,
        max_input_tokens: int = 100000,
        fallback_words: int = 50,
        gate: Optional[FixedIntervalGate] = None,
    ) -> None:
        self.gateway = gateway
        self.max_input_tokens = max_input_tokens
        self.fallback_words = fallback_words
        self.gate = gate

    def fallback_summary(self, chunk: TextChunk) -> ChunkSummary:
        words = chunk.own_text.split() or chunk.text.split()
        excerpt = " ".join(words[: self.fallback_words])
        if len(words) > self.fallback_words:
            excerpt += "..."
        return ChunkSummary(
            chunk_id=chunk.chunk_id,
            title=chunk.title,
            summary=excerpt or "(empty section)",
            confidence=Confidence.LOW,
        )

    @staticmethod
    def _parse(chunk: TextChunk, content: str) -> ChunkSummary:
        data = extract_json(content)
        if not isinstance(data, dict):
            raise ValueError("summary response is not a JSON object")
        data["chunk_id"] = chunk.chunk_id
        data["title"] = str(data.get("title") or "").strip() or chunk.title
        return ChunkSummary.model_validate(data)

    def summarize_chunk(self, chunk: TextChunk) -> StageResult:
        text = truncate_to_token_budget(chunk.text, self.max_input_tokens)
        result = run_stage(
            self.gateway,
            SUMMARY_SYSTEM_PROMPT,
            summary_user_prompt(chunk.chunk_id, chunk.title, text),
            lambda content: self._parse(chunk, content),
            lambda: self.fallback_summary(chunk),
            label=f"summarize:{chunk.chunk_id}",
            gate=self.gate,
        )
        if result.degraded:
            logger.warning("Chunk summary degraded | chunk=%s reason=%s", chunk.chunk_id, result.reason)
        return result

    def summarize_chunks(
        self,
        chunks: Iterable[TextChunk],
        on_summary: Optional[Callable[[ChunkSummary, StageResult], None]] = None,
    ) -> List[StageResult]:
        """Summarize chunks in order; ``on_summary`` runs after each one (used to persist incrementally)."""
        results: List[StageResult] = []
        for chunk in chunks:
            result = self.summarize_chunk(chunk)
            if on_summary is not None:
                on_summary(result.output, result)
            results.append(result)
        return results


def summary_statistics(summaries: Sequence[ChunkSummary]) -> Dict[str, object]:
    counts = {level.value: 0 for level in Confidence}
    for summary in summaries:
        counts[summary.confidence.value] += 1
    return {
        "total": len(summaries),
        **counts,
        "low_confidence_ids": [summary.chunk_id for summary in summaries if summary.is_low_confidence],
    }


__all__ = ["ChunkSummarizer", "summary_statistics"]
