from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from exam_pipeline.errors import ConfigurationError
from exam_pipeline.utils.costs import CostTracker
from exam_pipeline.utils.logging_config import get_logger
from exam_pipeline.utils.rate_limit import FixedIntervalGate
from exam_pipeline.utils.types import FileResult, TextChunk
from exam_pipeline.workflow.batch import BatchAggregator, BatchResult, render_csv_report, render_summary_report
from exam_pipeline.workflow.chunking import TextSegmenter, chunk_statistics, clean_text
from exam_pipeline.workflow.consolidation import ConsolidationAssembler
from exam_pipeline.workflow.flows import collect_workflows, render_workflows_report
from exam_pipeline.workflow.llm import GenerationGateway, build_gateway
from exam_pipeline.workflow.state import (
    PIPELINE_ORDER,
    LessonState,
    PipelineState,
    Stage,
    StageStateMachine,
    StageStatus,
)
from exam_pipeline.workflow.summarize import ChunkSummarizer, summary_statistics
from exam_pipeline.workflow.utils.persistence import (
    LessonPaths,
    ensure_output_dirs,
    lesson_key,
    load_chunks,
    load_summaries,
    open_state_store,
    remove_stage_outputs,
    save_chunks,
    save_summary,
    write_text,
)
from exam_pipeline.workflow.utils.progress import ProgressPublisher
from exam_pipeline.workflow.utils.settings import PipelineSettings
from exam_pipeline.workflow.utils.summary_models import ChunkSummary
from exam_pipeline.workflow.validation import check_transcript, list_transcripts

logger = get_logger(__name__)

REPORT_BASENAME = "batch_report"


@dataclass
class _LessonContext:
    """Values produced by earlier stages in this run, reused by later ones."""

    paths: LessonPaths
    chunks: Optional[List[TextChunk]] = None
    summaries: Optional[List[ChunkSummary]] = None
    master_notes: Optional[str] = None
    outputs: List[str] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)


class PipelineRunner:
    """Drives lessons through chunking, summarization, consolidation and exam materials.

    State is saved after every stage transition. A failing stage is marked
    FAILED and the error propagates to the batch loop, which records it and
    moves on to the next file. An interrupt leaves the running stage
    IN_PROGRESS so the next run restarts it.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        *,
        summarizer_gateway: Optional[GenerationGateway],
        consolidator_gateway: Optional[GenerationGateway],
        store,
        cost_tracker: Optional[CostTracker] = None,
        gate: Optional[FixedIntervalGate] = None,
        progress: Optional[ProgressPublisher] = None,
        machine: Optional[StageStateMachine] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cost_tracker = cost_tracker or CostTracker()
        self.gate = gate or FixedIntervalGate(settings.rate_limit_seconds)
        self.progress = progress or ProgressPublisher(None, job_id="local")
        self.machine = machine or StageStateMachine()
        self.segmenter = TextSegmenter(settings.chunk_size, settings.chunk_overlap)
        self.summarizer = ChunkSummarizer(
            summarizer_gateway,
            max_input_tokens=settings.max_summary_input_tokens,
            fallback_words=settings.fallback_summary_words,
            gate=self.gate,
        )
        self.assembler = ConsolidationAssembler(
            consolidator_gateway,
            max_input_tokens=settings.max_exam_input_tokens,
            gate=self.gate,
        )
        self.state = PipelineState()
        self._handlers: Dict[Stage, Callable[[Path, LessonState, _LessonContext], None]] = {
            Stage.CHUNKING: self._run_chunking,
            Stage.SUMMARIZATION: self._run_summarization,
            Stage.CONSOLIDATION: self._run_consolidation,
            Stage.EXAM_MATERIALS: self._run_exam_materials,
        }

    @classmethod
    def from_settings(cls, settings: PipelineSettings, *, job_id: Optional[str] = None) -> "PipelineRunner":
        tracker = CostTracker()
        return cls(
            settings,
            summarizer_gateway=build_gateway(settings, settings.summarizer_model, cost_tracker=tracker),
            consolidator_gateway=build_gateway(settings, settings.consolidator_model, cost_tracker=tracker),
            store=open_state_store(settings.resolved_state_url),
            cost_tracker=tracker,
            progress=ProgressPublisher(settings.progress_redis_url, job_id=job_id or str(uuid.uuid4())),
        )

    # State

    def load_state(self, *, fresh: bool = False) -> PipelineState:
        """Load persisted state; ResumabilityError propagates unless ``fresh`` is requested."""
        loaded = None if fresh else self.store.load()
        self.state = loaded or PipelineState()
        if loaded is not None:
            logger.info("Loaded pipeline state | location=%s lessons=%s", self.store.location, len(loaded.lessons))
        return self.state

    def save_state(self) -> None:
        self.state.refresh_overall_status()
        self.store.save(self.state.snapshot())

    # Stages

    def _run_chunking(self, path: Path, lesson: LessonState, ctx: _LessonContext) -> None:
        text = path.read_text(encoding="utf-8")
        check = check_transcript(path, text)
        if not check.ok:
            raise ValueError(check.message)
        for warning in check.warnings:
            logger.warning("Transcript warning | lesson=%s warning=%s", ctx.paths.lesson, warning)

        chunks = self.segmenter.segment(clean_text(text), source_file=path.name)
        if not chunks:
            raise ValueError("transcript is empty after cleanup")
        # New chunk boundaries invalidate summaries from an earlier run.
        remove_stage_outputs(ctx.paths, Stage.SUMMARIZATION)
        save_chunks(ctx.paths.chunks_file, chunks)
        lesson.chunks_path = str(ctx.paths.chunks_file)
        ctx.chunks = chunks
        ctx.outputs.append(str(ctx.paths.chunks_file))
        stats = chunk_statistics(chunks)
        logger.info(
            "Chunking stats | lesson=%s count=%s avg_tokens=%s min=%s max=%s",
            ctx.paths.lesson,
            stats["count"],
            stats["avg_tokens"],
            stats["min_tokens"],
            stats["max_tokens"],
        )

    def _chunks(self, ctx: _LessonContext) -> List[TextChunk]:
        if ctx.chunks is None:
            ctx.chunks = load_chunks(ctx.paths.chunks_file)
        return ctx.chunks

    def _run_summarization(self, path: Path, lesson: LessonState, ctx: _LessonContext) -> None:
        chunks = self._chunks(ctx)
        existing = load_summaries(ctx.paths, chunks)
        missing = [chunk for chunk in chunks if chunk.chunk_id not in existing]
        if existing:
            logger.info(
                "Resuming summarization | lesson=%s done=%s remaining=%s",
                ctx.paths.lesson,
                len(existing),
                len(missing),
            )

        def persist(summary: ChunkSummary, result) -> None:
            save_summary(ctx.paths, summary)
            existing[summary.chunk_id] = summary
            if result.degraded:
                ctx.degraded.append(f"summary:{summary.chunk_id}")

        self.summarizer.summarize_chunks(missing, on_summary=persist)
        summaries = [existing[chunk.chunk_id] for chunk in chunks]
        stats = summary_statistics(summaries)
        lesson.summaries_dir = str(ctx.paths.summaries_dir)
        lesson.summary_count = len(summaries)
        lesson.confidence_issues = list(stats["low_confidence_ids"])
        ctx.summaries = summaries
        ctx.outputs.append(str(ctx.paths.summaries_dir))
        logger.info(
            "Summary stats | lesson=%s total=%s high=%s medium=%s low=%s",
            ctx.paths.lesson,
            stats["total"],
            stats["high"],
            stats["medium"],
            stats["low"],
        )

    def _summaries(self, ctx: _LessonContext) -> List[ChunkSummary]:
        if ctx.summaries is None:
            chunks = self._chunks(ctx)
            found = load_summaries(ctx.paths, chunks)
            summaries = []
            for chunk in chunks:
                summary = found.get(chunk.chunk_id)
                if summary is None:
                    logger.warning("Summary missing, using local fallback | lesson=%s chunk=%s", ctx.paths.lesson, chunk.chunk_id)
                    summary = self.summarizer.fallback_summary(chunk)
                    ctx.degraded.append(f"summary:{chunk.chunk_id}")
                summaries.append(summary)
            ctx.summaries = summaries
        return ctx.summaries

    def _run_consolidation(self, path: Path, lesson: LessonState, ctx: _LessonContext) -> None:
        summaries = self._summaries(ctx)
        notes = self.assembler.master_notes(summaries)
        write_text(ctx.paths.master_notes, notes.output)
        if notes.degraded:
            ctx.degraded.append("master_notes")
        lesson.master_notes_path = str(ctx.paths.master_notes)
        ctx.master_notes = notes.output
        ctx.outputs.append(str(ctx.paths.master_notes))
        if collect_workflows(summaries):
            write_text(ctx.paths.flows_file, render_workflows_report(ctx.paths.lesson, summaries))
            ctx.outputs.append(str(ctx.paths.flows_file))

    def _run_exam_materials(self, path: Path, lesson: LessonState, ctx: _LessonContext) -> None:
        summaries = self._summaries(ctx)
        notes = ctx.master_notes
        if notes is None and ctx.paths.master_notes.exists():
            notes = ctx.paths.master_notes.read_text(encoding="utf-8")
        if notes is None:
            logger.warning("Master notes missing, using local fallback | lesson=%s", ctx.paths.lesson)
            notes = self.assembler.fallback_master_notes(summaries)
            ctx.degraded.append("master_notes")
        materials = self.assembler.exam_materials(notes, summaries)
        targets = {
            "quick_revision": ctx.paths.quick_revision,
            "flashcards": ctx.paths.flashcards,
            "practice_questions": ctx.paths.practice_questions,
        }
        for name, result in materials.items():
            write_text(targets[name], result.output)
            ctx.outputs.append(str(targets[name]))
            if result.degraded:
                ctx.degraded.append(name)
        lesson.exam_materials_dir = str(ctx.paths.exam_dir)

    # Lessons and batches

    def process_file(self, path: str | Path) -> FileResult:
        path = Path(path)
        key = lesson_key(path)
        ctx = _LessonContext(paths=LessonPaths.for_lesson(self.settings.output_dir, key))
        lesson = self.state.lesson(key, filename=path.name)
        started = time.monotonic()
        cost_before = self.cost_tracker.total

        next_stage = self.machine.next_stage(lesson)
        if next_stage is None:
            logger.info("Lesson already complete | lesson=%s", key)
        elif self.machine.can_resume(lesson):
            logger.info("Resuming lesson | lesson=%s from_stage=%s", key, next_stage.value)

        while next_stage is not None:
            self._run_stage(path, lesson, next_stage, ctx)
            next_stage = self.machine.next_stage(lesson)

        chunks = ctx.chunks
        if chunks is None and ctx.paths.chunks_file.exists():
            chunks = load_chunks(ctx.paths.chunks_file)
        return FileResult(
            filename=path.name,
            status="success",
            duration_ms=int((time.monotonic() - started) * 1000),
            cost=self.cost_tracker.total - cost_before,
            chunks_created=len(chunks or []),
            summaries_created=lesson.summary_count,
            outputs_generated=ctx.outputs,
            degraded_outputs=ctx.degraded,
        )

    def _run_stage(self, path: Path, lesson: LessonState, stage: Stage, ctx: _LessonContext) -> None:
        step = PIPELINE_ORDER.index(stage)
        # Summaries written before a failure stay valid for the same chunks file.
        if lesson.status(stage) == StageStatus.FAILED and stage != Stage.SUMMARIZATION:
            remove_stage_outputs(ctx.paths, stage)
        self.machine.start(lesson, stage)
        self.save_state()
        self.progress.emit(ctx.paths.lesson, "IN_PROGRESS", stage.value, progress=int(100 * step / len(PIPELINE_ORDER)))
        try:
            self._handlers[stage](path, lesson, ctx)
        except KeyboardInterrupt:
            logger.warning("Interrupted, stage left in progress | lesson=%s stage=%s", ctx.paths.lesson, stage.value)
            self.save_state()
            raise
        except ConfigurationError:
            self.save_state()
            raise
        except Exception as exc:
            self.machine.fail(lesson, stage, str(exc) or type(exc).__name__)
            self.state.log_error(f"{ctx.paths.lesson}: {stage.value}: {exc}")
            self.save_state()
            self.progress.emit(ctx.paths.lesson, "FAILED", stage.value, extra={"error": str(exc)})
            raise
        self.machine.complete(lesson, stage)
        self.save_state()
        self.progress.emit(
            ctx.paths.lesson, "COMPLETED", stage.value, progress=int(100 * (step + 1) / len(PIPELINE_ORDER))
        )

    def process_batch(self, files: Iterable[str | Path]) -> BatchResult:
        aggregator = BatchAggregator()
        aggregator.start()
        for path in files:
            path = Path(path)
            try:
                result = self.process_file(path)
            except ConfigurationError:
                raise
            except Exception as exc:
                aggregator.record_failure(path.name, exc)
                continue
            aggregator.record_success(path.name, result)
        return aggregator.complete()

    def run(self, source: str | Path | None = None, *, only: Optional[str] = None) -> BatchResult:
        source = Path(source or self.settings.transcript_dir)
        files = [source] if source.is_file() else list_transcripts(source)
        if only:
            files = [path for path in files if path.name == only or path.stem == only]
        ensure_output_dirs(self.settings.output_dir)
        logger.info("Batch input | source=%s files=%s", source, len(files))
        result = self.process_batch(files)
        self.write_reports(result)
        return result

    def write_reports(self, result: BatchResult) -> List[Path]:
        root = Path(self.settings.output_dir)
        written = [
            write_text(root / f"{REPORT_BASENAME}.txt", render_summary_report(result)),
            write_text(root / f"{REPORT_BASENAME}.csv", render_csv_report(result)),
            write_text(root / f"{REPORT_BASENAME}.json", _json_report(result)),
        ]
        logger.info("Batch reports written | dir=%s", root)
        return written


def _json_report(result: BatchResult) -> str:
    return json.dumps(result.to_dict(), indent=2, ensure_ascii=False)


__all__ = ["PipelineRunner", "REPORT_BASENAME"]
