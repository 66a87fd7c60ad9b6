from __future__ import annotations

import json
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError

from exam_pipeline.db.state_store import SqlStateStore, is_sql_url
from exam_pipeline.errors import ResumabilityError
from exam_pipeline.utils.logging_config import get_logger
from exam_pipeline.utils.types import TextChunk
from exam_pipeline.workflow.state import PipelineState, Stage
from exam_pipeline.workflow.utils.summary_models import ChunkSummary

logger = get_logger(__name__)

OUTPUT_SUBDIRS = ("chunks", "summaries", "consolidated", "flows", "exam_materials")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name).strip("._") or "lesson"


def lesson_key(path: str | Path) -> str:
    return sanitize_name(Path(path).stem)


@dataclass(frozen=True)
class LessonPaths:
    """Where every artifact of one lesson lives under the output directory."""

    lesson: str
    chunks_file: Path
    summaries_dir: Path
    master_notes: Path
    flows_file: Path
    exam_dir: Path

    @classmethod
    def for_lesson(cls, output_dir: str | Path, lesson: str) -> "LessonPaths":
        root = Path(output_dir)
        name = sanitize_name(lesson)
        return cls(
            lesson=name,
            chunks_file=root / "chunks" / f"{name}_chunks.json",
            summaries_dir=root / "summaries" / name,
            master_notes=root / "consolidated" / f"{name}_master_notes.md",
            flows_file=root / "flows" / f"{name}_flows.md",
            exam_dir=root / "exam_materials" / name,
        )

    @property
    def quick_revision(self) -> Path:
        return self.exam_dir / "quick_revision.md"

    @property
    def flashcards(self) -> Path:
        return self.exam_dir / "flashcards.csv"

    @property
    def practice_questions(self) -> Path:
        return self.exam_dir / "practice_questions.md"

    def summary_file(self, chunk_id: str) -> Path:
        return self.summaries_dir / f"chunk_{chunk_id}.json"

    def stage_outputs(self, stage: Stage) -> List[Path]:
        return {
            Stage.CHUNKING: [self.chunks_file],
            Stage.SUMMARIZATION: [self.summaries_dir],
            Stage.CONSOLIDATION: [self.master_notes, self.flows_file],
            Stage.EXAM_MATERIALS: [self.exam_dir],
        }[stage]


def ensure_output_dirs(output_dir: str | Path) -> None:
    for name in OUTPUT_SUBDIRS:
        (Path(output_dir) / name).mkdir(parents=True, exist_ok=True)


def write_text(path: Path, text: str) -> Path:
    """Write through a temp file so a crash never leaves a half-written artifact."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)
    return path


def save_chunks(path: Path, chunks: Sequence[TextChunk]) -> Path:
    return write_text(path, json.dumps([chunk.to_dict() for chunk in chunks], indent=2, ensure_ascii=False))


def load_chunks(path: Path) -> List[TextChunk]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    return [TextChunk.from_dict(item) for item in payload]


def save_summary(paths: LessonPaths, summary: ChunkSummary) -> Path:
    return write_text(paths.summary_file(summary.chunk_id), summary.model_dump_json(indent=2))


def load_summary(path: Path) -> Optional[ChunkSummary]:
    try:
        return ChunkSummary.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable summary | path=%s error=%s", path, exc)
        return None


def load_summaries(paths: LessonPaths, chunks: Sequence[TextChunk]) -> Dict[str, ChunkSummary]:
    """Summaries already on disk for ``chunks``, keyed by chunk id."""
    found: Dict[str, ChunkSummary] = {}
    for chunk in chunks:
        path = paths.summary_file(chunk.chunk_id)
        if not path.exists():
            continue
        summary = load_summary(path)
        if summary is not None:
            found[chunk.chunk_id] = summary
    return found


def remove_stage_outputs(paths: LessonPaths, stage: Stage) -> List[Path]:
    removed: List[Path] = []
    for target in paths.stage_outputs(stage):
        if target.is_dir():
            shutil.rmtree(target)
            removed.append(target)
        elif target.exists():
            target.unlink()
            removed.append(target)
    if removed:
        logger.info("Removed partial outputs | lesson=%s stage=%s count=%s", paths.lesson, stage.value, len(removed))
    return removed


class JsonStateStore:
    """PipelineState persisted as a single JSON document."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @property
    def location(self) -> str:
        return str(self.path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[PipelineState]:
        if not self.path.exists():
            return None
        try:
            return PipelineState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as exc:
            raise ResumabilityError(f"Pipeline state at {self.path} is unreadable: {exc}") from exc

    def save(self, state: PipelineState) -> None:
        write_text(self.path, state.model_dump_json(indent=2))

    def delete(self) -> bool:
        if self.path.exists():
            self.path.unlink()
            return True
        return False


def open_state_store(url: str) -> JsonStateStore | SqlStateStore:
    if is_sql_url(url):
        return SqlStateStore(url)
    return JsonStateStore(url)


__all__ = [
    "JsonStateStore",
    "LessonPaths",
    "ensure_output_dirs",
    "lesson_key",
    "load_chunks",
    "load_summaries",
    "open_state_store",
    "remove_stage_outputs",
    "sanitize_name",
    "save_chunks",
    "save_summary",
    "write_text",
]
