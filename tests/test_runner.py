import csv
import io
import json
import pathlib
import sys

import pytest
from pydantic import ValidationError

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from exam_pipeline.errors import ConfigurationError, ServiceError
from exam_pipeline.utils.rate_limit import FixedIntervalGate
from exam_pipeline.workflow.runner import PipelineRunner
from exam_pipeline.workflow.state import Stage, StageStatus
from exam_pipeline.workflow.utils.persistence import JsonStateStore, LessonPaths, load_chunks
from exam_pipeline.workflow.utils.settings import PipelineSettings
from exam_pipeline.workflow.utils.summary_models import ChunkSummary, Confidence

LECTURE = """# Cells
Cells are the basic unit of life. Every organism is built from one or more cells,
and each cell is enclosed by a membrane that controls what enters and leaves.

# Energy
Mitochondria convert glucose into ATP through aerobic respiration. The process
needs oxygen and releases carbon dioxide and water as by-products.

# Genetics
DNA carries hereditary information in sequences of bases. Genes are copied into
RNA and translated into proteins that do most of the work inside the cell.
"""


class ScriptedGateway:
    """Answers every prompt locally; chunk ids in ``fail_chunks`` get a ServiceError.

    Chunk ids in ``crash_chunks`` raise an error the fallback policy does not absorb.
    """

    is_active = True

    def __init__(self, fail_chunks=(), interrupt_chunks=(), crash_chunks=()):
        self.fail_chunks = set(fail_chunks)
        self.crash_chunks = set(crash_chunks)
        self.interrupt_chunks = set(interrupt_chunks)
        self.summary_requests = []
        self.other_requests = 0

    def generate(self, system_prompt, user_prompt):
        if user_prompt.startswith("Chunk ID: "):
            chunk_id = user_prompt.split("\n", 1)[0].split(": ", 1)[1]
            self.summary_requests.append(chunk_id)
            if chunk_id in self.interrupt_chunks:
                raise KeyboardInterrupt
            if chunk_id in self.fail_chunks:
                raise ServiceError("upstream timeout")
            if chunk_id in self.crash_chunks:
                raise RuntimeError("connection pool exhausted")
            return json.dumps(
                {
                    "chunk_id": chunk_id,
                    "title": f"Topic {chunk_id}",
                    "summary": f"Generated summary for chunk {chunk_id}.",
                    "key_points": ["point"],
                    "confidence": "high",
                }
            )
        self.other_requests += 1
        if "flashcards" in system_prompt.lower():
            return '"Front","Back"\n"What is ATP?","Energy currency"\n'
        return "# Generated\n\nContent."


def _settings(tmp_path, **overrides):
    values = dict(output_dir=str(tmp_path / "out"), chunk_size=200, chunk_overlap=10, rate_limit_seconds=0)
    values.update(overrides)
    return PipelineSettings(**values)


def _runner(tmp_path, gateway, **overrides):
    runner = PipelineRunner(
        _settings(tmp_path, **overrides),
        summarizer_gateway=gateway,
        consolidator_gateway=gateway,
        store=JsonStateStore(tmp_path / "out" / ".pipeline_state.json"),
        gate=FixedIntervalGate(0),
    )
    runner.load_state()
    return runner


def _write(tmp_path, name="biology.txt", text=LECTURE):
    path = tmp_path / "transcripts" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _summaries_on_disk(paths):
    return sorted(
        (ChunkSummary.model_validate_json(path.read_text()) for path in paths.summaries_dir.glob("chunk_*.json")),
        key=lambda summary: int(summary.chunk_id),
    )


def test_failure_on_one_chunk_only_degrades_that_summary(tmp_path):
    gateway = ScriptedGateway(fail_chunks={"2"})
    runner = _runner(tmp_path, gateway)

    result = runner.process_file(_write(tmp_path))

    paths = LessonPaths.for_lesson(tmp_path / "out", "biology")
    summaries = _summaries_on_disk(paths)
    assert [summary.chunk_id for summary in summaries] == ["1", "2", "3"]
    low = [summary for summary in summaries if summary.confidence == Confidence.LOW]
    assert [summary.chunk_id for summary in low] == ["2"]
    assert low[0].summary.startswith("# Energy Mitochondria convert glucose")

    lesson = runner.state.lessons["biology"]
    assert lesson.summarization_status == StageStatus.COMPLETED
    assert all(status == StageStatus.COMPLETED for status in lesson.statuses().values())
    assert lesson.confidence_issues == ["2"]
    assert result.chunks_created == 3
    assert result.summaries_created == 3
    assert result.degraded_outputs == ["summary:2"]


def test_all_artifacts_written_and_state_persisted(tmp_path):
    runner = _runner(tmp_path, ScriptedGateway())

    runner.process_file(_write(tmp_path))

    paths = LessonPaths.for_lesson(tmp_path / "out", "biology")
    assert len(load_chunks(paths.chunks_file)) == 3
    assert paths.master_notes.read_text() == "# Generated\n\nContent.\n"
    assert paths.flashcards.read_text().startswith('"Front","Back"')
    assert paths.quick_revision.exists() and paths.practice_questions.exists()

    saved = JsonStateStore(tmp_path / "out" / ".pipeline_state.json").load()
    assert saved.lessons["biology"].exam_materials_status == StageStatus.COMPLETED
    assert saved.overall_status.value == "completed"


def test_offline_run_still_produces_every_artifact(tmp_path):
    runner = _runner(tmp_path, None)

    result = runner.process_file(_write(tmp_path))

    paths = LessonPaths.for_lesson(tmp_path / "out", "biology")
    assert "REVIEW THIS" in paths.master_notes.read_text()
    assert "### MCQ 6" in paths.practice_questions.read_text()
    assert set(result.degraded_outputs) >= {"master_notes", "quick_revision", "flashcards", "practice_questions"}


def test_interrupt_leaves_stage_in_progress_and_resume_skips_done_chunks(tmp_path):
    transcript = _write(tmp_path)
    first = _runner(tmp_path, ScriptedGateway(interrupt_chunks={"2"}))

    with pytest.raises(KeyboardInterrupt):
        first.process_file(transcript)

    store = JsonStateStore(tmp_path / "out" / ".pipeline_state.json")
    saved = store.load().lessons["biology"]
    assert saved.chunking_status == StageStatus.COMPLETED
    assert saved.summarization_status == StageStatus.IN_PROGRESS

    gateway = ScriptedGateway()
    second = _runner(tmp_path, gateway)
    second.process_file(transcript)

    assert gateway.summary_requests == ["2", "3"]
    assert second.state.lessons["biology"].exam_materials_status == StageStatus.COMPLETED


def test_completed_lesson_is_not_reprocessed(tmp_path):
    transcript = _write(tmp_path)
    _runner(tmp_path, ScriptedGateway()).process_file(transcript)

    gateway = ScriptedGateway()
    result = _runner(tmp_path, gateway).process_file(transcript)

    assert gateway.summary_requests == []
    assert gateway.other_requests == 0
    assert result.chunks_created == 3


def test_batch_records_bad_file_and_continues(tmp_path):
    _write(tmp_path, "a_good.txt")
    _write(tmp_path, "b_tiny.txt", "too short")
    runner = _runner(tmp_path, ScriptedGateway())

    result = runner.run(tmp_path / "transcripts")

    assert [item.filename for item in result.successful] == ["a_good.txt"]
    assert [item.filename for item in result.failed] == ["b_tiny.txt"]
    assert "too small" in result.failed[0].error_message
    assert result.success_rate() == 50.0

    tiny = runner.state.lessons["b_tiny"]
    assert tiny.chunking_status == StageStatus.FAILED
    assert "too small" in tiny.failure_reason(Stage.CHUNKING)

    out = tmp_path / "out"
    rows = list(csv.reader(io.StringIO((out / "batch_report.csv").read_text())))
    assert len(rows) == 3
    assert "BATCH PROCESSING REPORT" in (out / "batch_report.txt").read_text()
    assert json.loads((out / "batch_report.json").read_text())["failed_count"] == 1


def test_failed_stage_is_retried_on_next_run(tmp_path):
    transcript = _write(tmp_path, "late.txt", "too short")
    runner = _runner(tmp_path, ScriptedGateway())
    runner.run(transcript)

    transcript.write_text(LECTURE, encoding="utf-8")
    retry = _runner(tmp_path, ScriptedGateway())
    result = retry.run(transcript)

    assert [item.filename for item in result.successful] == ["late.txt"]
    assert retry.state.lessons["late"].failure_reason(Stage.CHUNKING) is None


def test_retrying_failed_summarization_keeps_finished_summaries(tmp_path):
    transcript = _write(tmp_path)
    first = _runner(tmp_path, ScriptedGateway(crash_chunks={"3"}))
    first.run(transcript)
    assert first.state.lessons["biology"].summarization_status == StageStatus.FAILED

    gateway = ScriptedGateway()
    retry = _runner(tmp_path, gateway)
    result = retry.run(transcript)

    assert [item.filename for item in result.successful] == ["biology.txt"]
    assert gateway.summary_requests == ["3"]
    paths = LessonPaths.for_lesson(tmp_path / "out", "biology")
    assert [summary.chunk_id for summary in _summaries_on_disk(paths)] == ["1", "2", "3"]


def test_exam_materials_without_master_notes_uses_local_notes(tmp_path):
    transcript = _write(tmp_path)
    runner = _runner(tmp_path, ScriptedGateway())
    runner.process_file(transcript)
    runner.machine.reset(runner.state.lessons["biology"], Stage.EXAM_MATERIALS)
    runner.save_state()
    paths = LessonPaths.for_lesson(tmp_path / "out", "biology")
    paths.master_notes.unlink()

    resumed = _runner(tmp_path, ScriptedGateway())
    result = resumed.process_file(transcript)

    assert result.degraded_outputs == ["master_notes"]
    assert resumed.state.lessons["biology"].exam_materials_status == StageStatus.COMPLETED
    assert paths.quick_revision.exists()
    assert paths.flashcards.exists()

def test_invalid_configuration_is_fatal(tmp_path):
    with pytest.raises(ValidationError):
        _settings(tmp_path, chunk_size=100, chunk_overlap=100)
    with pytest.raises(ConfigurationError):
        PipelineRunner(
            PipelineSettings.model_construct(**{**_settings(tmp_path).model_dump(), "chunk_overlap": 500}),
            summarizer_gateway=None,
            consolidator_gateway=None,
            store=JsonStateStore(tmp_path / "state.json"),
        )
