import pathlib
import sys

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from exam_pipeline.cli import main
from exam_pipeline.workflow.state import PipelineState, Stage, StageStateMachine, StageStatus
from exam_pipeline.workflow.utils.persistence import JsonStateStore

LECTURE = "# Topic\n" + " ".join(f"word{i}" for i in range(120)) + "\n"


def _base(tmp_path):
    return ["--env-file", "", "--output-dir", str(tmp_path / "out"), "--state-url", str(tmp_path / "state.json")]


def test_status_without_state(tmp_path, capsys):
    assert main(_base(tmp_path) + ["status"]) == 0
    assert "No pipeline state" in capsys.readouterr().out


def test_run_offline_then_status(tmp_path, capsys, monkeypatch):
    for key in ("CLAUDE_API_KEY", "OPENAI_API_KEY", "GEMINI_API_KEY", "PROGRESS_REDIS_URL", "STATE_URL"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("RATE_LIMIT_SECONDS", "0")
    transcript = tmp_path / "lecture.txt"
    transcript.write_text(LECTURE)

    assert main(_base(tmp_path) + ["run", str(transcript)]) == 0
    assert "BATCH PROCESSING REPORT" in capsys.readouterr().out
    assert (tmp_path / "out" / "consolidated" / "lecture_master_notes.md").exists()

    assert main(_base(tmp_path) + ["status"]) == 0
    assert "✓ exam_materials" in capsys.readouterr().out


def test_reset_sends_lesson_back(tmp_path, capsys):
    state = PipelineState()
    lesson = state.lesson("lecture", filename="lecture.txt")
    machine = StageStateMachine()
    for stage in (Stage.CHUNKING, Stage.SUMMARIZATION):
        machine.start(lesson, stage)
        machine.complete(lesson, stage)
    JsonStateStore(tmp_path / "state.json").save(state)

    assert main(_base(tmp_path) + ["reset", "lecture", "--stage", "summarization"]) == 0

    reloaded = JsonStateStore(tmp_path / "state.json").load()
    assert reloaded.lessons["lecture"].chunking_status == StageStatus.COMPLETED
    assert reloaded.lessons["lecture"].summarization_status == StageStatus.NOT_STARTED


def test_corrupt_state_exits_with_usage_error(tmp_path, capsys):
    (tmp_path / "state.json").write_text("{oops")

    assert main(_base(tmp_path) + ["status"]) == 2
    assert "--fresh" in capsys.readouterr().err


def test_bad_configuration_exits_with_usage_error(tmp_path, capsys):
    code = main(_base(tmp_path) + ["run", str(tmp_path), "--chunk-size", "10", "--chunk-overlap", "10"])

    assert code == 2
    assert "Configuration error" in capsys.readouterr().err


def test_estimate(tmp_path, capsys):
    transcript = tmp_path / "lecture.txt"
    transcript.write_text(LECTURE)

    assert main(_base(tmp_path) + ["estimate", str(transcript)]) == 0
    assert "TOTAL" in capsys.readouterr().out
