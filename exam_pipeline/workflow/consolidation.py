from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from exam_pipeline.utils.logging_config import get_logger
from exam_pipeline.utils.rate_limit import FixedIntervalGate
from exam_pipeline.utils.types import StageResult
from exam_pipeline.workflow.chunking import truncate_to_token_budget
from exam_pipeline.workflow.fallback import run_stage
from exam_pipeline.workflow.llm import GenerationGateway
from exam_pipeline.workflow.utils import prompts
from exam_pipeline.workflow.utils.summary_models import ChunkSummary

logger = get_logger(__name__)

REVIEW_MARKER = "> ⚠️ REVIEW THIS: generated locally from chunk summaries because the generation service was unavailable."
FLASHCARD_HEADER = ("Front", "Back")
MCQ_COUNT = 6
SHORT_ANSWER_COUNT = 6
LONG_FORM_COUNT = 2
_OPTION_LETTERS = "ABCD"
_PLACEHOLDER_OPTION = "[REVIEW THIS: add a distractor]"


@dataclass
class ExamArtifacts:
    """The four consolidation outputs for one lesson, each Ok or Degraded."""

    master_notes: StageResult
    quick_revision: StageResult
    flashcards: StageResult
    practice_questions: StageResult

    def as_dict(self) -> Dict[str, StageResult]:
        return {
            "master_notes": self.master_notes,
            "quick_revision": self.quick_revision,
            "flashcards": self.flashcards,
            "practice_questions": self.practice_questions,
        }

    @property
    def degraded(self) -> List[str]:
        return [name for name, result in self.as_dict().items() if result.degraded]


def _require_text(content: str) -> str:
    text = content.strip()
    if not text:
        raise ValueError("empty response")
    return text + "\n"


def format_flashcards(cards: Sequence[Tuple[str, str]]) -> str:
    """Two quoted columns with a header row; embedded quotes are doubled."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(FLASHCARD_HEADER)
    for front, back in cards:
        writer.writerow((front, back))
    return buffer.getvalue()


def parse_flashcards(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        text = text.split("\n", 1)[1] if "\n" in text else ""
    rows = [row for row in csv.reader(io.StringIO(text)) if any(cell.strip() for cell in row)]
    if rows and [cell.strip().lower() for cell in rows[0][:2]] == ["front", "back"]:
        rows = rows[1:]
    cards = [(row[0].strip(), row[1].strip()) for row in rows if len(row) >= 2 and row[0].strip() and row[1].strip()]
    if not cards:
        raise ValueError("no two-column flashcard rows in response")
    return format_flashcards(cards)


class ConsolidationAssembler:
    """Builds master notes, quick revision, flashcards and practice questions for one lesson.

    Every artifact goes through the fallback policy; fallbacks are computed only
    from the summaries so a fully offline run still yields usable documents.
    """

    def __init__(
        self,
        gateway: Optional[GenerationGateway],
        *,
        max_input_tokens: int = 50000,
        gate: Optional[FixedIntervalGate] = None,
    ) -> None:
        self.gateway = gateway
        self.max_input_tokens = max_input_tokens
        self.gate = gate

    @staticmethod
    def build_payload(summaries: Sequence[ChunkSummary]) -> str:
        lines = ["CHUNK SUMMARIES:", ""]
        for summary in summaries:
            lines.append(f"--- Chunk {summary.chunk_id}: {summary.title} ---")
            lines.append(f"Summary: {summary.summary}")
            lines.append(f"Confidence: {summary.confidence.value}")
            if summary.key_points:
                lines.append(f"Key Points: {'; '.join(summary.key_points)}")
            if summary.definitions:
                lines.append("Definitions:")
                lines.extend(f"  - {item.term}: {item.definition}" for item in summary.definitions)
            lines.append("")
        return "\n".join(lines)

    # Fallbacks

    @staticmethod
    def fallback_master_notes(summaries: Sequence[ChunkSummary]) -> str:
        parts = ["# Master Notes", "", REVIEW_MARKER, ""]
        for summary in summaries:
            parts.append(f"## {summary.title or f'Chunk {summary.chunk_id}'}")
            parts.append("")
            if summary.is_low_confidence:
                parts.append("_Low confidence: check this section against the transcript._")
                parts.append("")
            parts.append(summary.summary)
            parts.append("")
            if summary.key_points:
                parts.append("### Key Points")
                parts.extend(f"- {point}" for point in summary.key_points)
                parts.append("")
            if summary.definitions:
                parts.append("### Definitions")
                parts.extend(f"- **{item.term}**: {item.definition}" for item in summary.definitions)
                parts.append("")
        return "\n".join(parts)

    @staticmethod
    def fallback_quick_revision(summaries: Sequence[ChunkSummary]) -> str:
        parts = ["# Quick Revision", "", REVIEW_MARKER, "", "## Topics", ""]
        for summary in summaries:
            parts.append(f"- **{summary.title or f'Chunk {summary.chunk_id}'}**: {summary.summary}")
        points = [point for summary in summaries for point in summary.key_points]
        if points:
            parts.extend(["", "## Key Facts", ""])
            parts.extend(f"- {point}" for point in points)
        definitions = [item for summary in summaries for item in summary.definitions]
        if definitions:
            parts.extend(["", "## Definitions", ""])
            parts.extend(f"- **{item.term}**: {item.definition}" for item in definitions)
        pointers = [pointer for summary in summaries for pointer in summary.exam_pointers]
        parts.extend(["", "## Remember", ""])
        if pointers:
            parts.extend(f"- {pointer}" for pointer in pointers)
        else:
            parts.append("- [REVIEW THIS: add exam pointers]")
        return "\n".join(parts) + "\n"

    @staticmethod
    def fallback_flashcards(summaries: Sequence[ChunkSummary]) -> str:
        cards: List[Tuple[str, str]] = []
        for summary in summaries:
            title = summary.title or f"Chunk {summary.chunk_id}"
            cards.append((f"What is {title} about?", summary.summary))
            cards.extend((f"Key point from {title}", point) for point in summary.key_points)
            cards.extend((f"Define: {item.term}", item.definition) for item in summary.definitions)
        return format_flashcards(cards)

    @staticmethod
    def fallback_practice_questions(summaries: Sequence[ChunkSummary]) -> str:
        definitions = [(item.term, item.definition) for summary in summaries for item in summary.definitions]
        points = [(summary.title, point) for summary in summaries for point in summary.key_points]
        parts = ["# Practice Questions", "", REVIEW_MARKER, "", f"## Part A: Multiple Choice ({MCQ_COUNT})", ""]

        for index in range(MCQ_COUNT):
            parts.append(f"### MCQ {index + 1}")
            if definitions:
                term, correct = definitions[index % len(definitions)]
                question = f"Which statement best defines **{term}**?"
                distractors = [text for _, text in definitions if text != correct]
            elif points:
                title, correct = points[index % len(points)]
                question = f"Which statement is a key point of **{title}**?"
                distractors = []
            else:
                question, correct, distractors = "[REVIEW THIS: write a question]", "[REVIEW THIS: correct answer]", []
            # Rotate so the same distractors are not always picked.
            offset = index % len(distractors) if distractors else 0
            options = (distractors[offset:] + distractors[:offset])[:3]
            options += [_PLACEHOLDER_OPTION] * (3 - len(options))
            answer_slot = index % len(_OPTION_LETTERS)
            options.insert(answer_slot, correct)
            parts.append(question)
            parts.extend(f"- {letter}) {text}" for letter, text in zip(_OPTION_LETTERS, options))
            parts.append(f"- Answer: {_OPTION_LETTERS[answer_slot]}")
            parts.append("")

        parts.extend([f"## Part B: Short Answer ({SHORT_ANSWER_COUNT})", ""])
        prompts_and_answers: List[Tuple[str, str]] = [
            (f"Explain this point from **{title}**: {point}", point) for title, point in points
        ]
        prompts_and_answers += [
            (f"Summarize the main idea of **{summary.title}**.", summary.summary) for summary in summaries
        ]
        for index in range(SHORT_ANSWER_COUNT):
            parts.append(f"### Short {index + 1}")
            if prompts_and_answers:
                question, answer = prompts_and_answers[index % len(prompts_and_answers)]
            else:
                question, answer = "[REVIEW THIS: write a question]", "[REVIEW THIS: model answer]"
            parts.append(question)
            parts.append(f"- Model answer: {answer}")
            parts.append("")

        parts.extend([f"## Part C: Long Form ({LONG_FORM_COUNT})", ""])
        titles = [summary.title for summary in summaries if summary.title]
        longest = max(summaries, key=lambda item: len(item.summary), default=None)
        long_questions = [
            (
                f"Discuss how these topics relate to each other: {', '.join(titles[:4]) or '[REVIEW THIS: topics]'}.",
                ["Covers every listed topic", "Explains at least two connections", "Uses correct terminology"],
            ),
            (
                f"Describe **{longest.title if longest else '[REVIEW THIS: topic]'}** in depth with an example.",
                ["Accurate core explanation", "Relevant worked example", "Clear structure and conclusion"],
            ),
        ]
        for index, (question, rubric) in enumerate(long_questions[:LONG_FORM_COUNT], start=1):
            parts.append(f"### Long {index}")
            parts.append(question)
            parts.append("Rubric:")
            parts.extend(f"- {criterion}" for criterion in rubric)
            parts.append("")
        return "\n".join(parts)

    # Stage processors

    def master_notes(self, summaries: Sequence[ChunkSummary]) -> StageResult:
        payload = truncate_to_token_budget(self.build_payload(summaries), self.max_input_tokens)
        return run_stage(
            self.gateway,
            prompts.MASTER_NOTES_SYSTEM_PROMPT,
            prompts.consolidation_user_prompt(payload),
            _require_text,
            lambda: self.fallback_master_notes(summaries),
            label="consolidate",
            gate=self.gate,
        )

    def quick_revision(self, master_notes: str, summaries: Sequence[ChunkSummary]) -> StageResult:
        return run_stage(
            self.gateway,
            prompts.QUICK_REVISION_SYSTEM_PROMPT,
            prompts.exam_user_prompt(truncate_to_token_budget(master_notes, self.max_input_tokens)),
            _require_text,
            lambda: self.fallback_quick_revision(summaries),
            label="quick_revision",
            gate=self.gate,
        )

    def flashcards(self, master_notes: str, summaries: Sequence[ChunkSummary]) -> StageResult:
        return run_stage(
            self.gateway,
            prompts.FLASHCARDS_SYSTEM_PROMPT,
            prompts.exam_user_prompt(truncate_to_token_budget(master_notes, self.max_input_tokens)),
            parse_flashcards,
            lambda: self.fallback_flashcards(summaries),
            label="flashcards",
            gate=self.gate,
        )

    def practice_questions(self, master_notes: str, summaries: Sequence[ChunkSummary]) -> StageResult:
        return run_stage(
            self.gateway,
            prompts.PRACTICE_QUESTIONS_SYSTEM_PROMPT,
            prompts.exam_user_prompt(truncate_to_token_budget(master_notes, self.max_input_tokens)),
            _require_text,
            lambda: self.fallback_practice_questions(summaries),
            label="practice_questions",
            gate=self.gate,
        )

    def exam_materials(self, master_notes: str, summaries: Sequence[ChunkSummary]) -> Dict[str, StageResult]:
        return {
            "quick_revision": self.quick_revision(master_notes, summaries),
            "flashcards": self.flashcards(master_notes, summaries),
            "practice_questions": self.practice_questions(master_notes, summaries),
        }

    def assemble(self, summaries: Sequence[ChunkSummary]) -> ExamArtifacts:
        notes = self.master_notes(summaries)
        materials = self.exam_materials(notes.output, summaries)
        artifacts = ExamArtifacts(master_notes=notes, **materials)
        logger.info(
            "Consolidation assembled | chunks=%s degraded=%s",
            len(summaries),
            ",".join(artifacts.degraded) or "-",
        )
        return artifacts


__all__ = [
    "ConsolidationAssembler",
    "ExamArtifacts",
    "FLASHCARD_HEADER",
    "REVIEW_MARKER",
    "format_flashcards",
    "parse_flashcards",
]
