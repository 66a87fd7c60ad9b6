from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Tuple

from exam_pipeline.workflow.chunking import estimate_tokens

# USD per 1K tokens: (input, output)
PRICING: Dict[str, Tuple[float, float]] = {
    "claude": (0.003, 0.015),
    "gpt": (0.0025, 0.010),
    "gemini": (0.00015, 0.0006),
}

SUMMARY_OUTPUT_RATIO = 0.3
CONSOLIDATION_OUTPUT_RATIO = 0.5
EXAM_MATERIAL_CALLS = 3


def call_cost(family: str, input_tokens: int, output_tokens: int) -> float:
    input_price, output_price = PRICING.get(family, PRICING["gpt"])
    return (input_tokens / 1000.0) * input_price + (output_tokens / 1000.0) * output_price


@dataclass
class CostTracker:
    """Running total of generation spend, split by model family."""

    total: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    calls: int = 0
    by_family: Dict[str, float] = field(default_factory=dict)

    def record(self, family: str, input_tokens: int, output_tokens: int) -> float:
        cost = call_cost(family, input_tokens, output_tokens)
        self.total += cost
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.calls += 1
        self.by_family[family] = self.by_family.get(family, 0.0) + cost
        return cost


def estimate_transcript_cost(text: str, summarizer: str = "claude", consolidator: str = "gpt") -> Dict[str, float]:
    """Rough pre-flight estimate for one transcript before any call is made."""
    input_tokens = estimate_tokens(text)
    summary_tokens = int(input_tokens * SUMMARY_OUTPUT_RATIO)
    consolidated_tokens = int(summary_tokens * CONSOLIDATION_OUTPUT_RATIO)

    summarization = call_cost(summarizer, input_tokens, summary_tokens)
    consolidation = call_cost(consolidator, summary_tokens, consolidated_tokens)
    exam_materials = EXAM_MATERIAL_CALLS * call_cost(consolidator, consolidated_tokens, consolidated_tokens)
    return {
        "input_tokens": input_tokens,
        "summarization": round(summarization, 4),
        "consolidation": round(consolidation, 4),
        "exam_materials": round(exam_materials, 4),
        "total": round(summarization + consolidation + exam_materials, 4),
    }


__all__ = ["PRICING", "CostTracker", "call_cost", "estimate_transcript_cost"]
