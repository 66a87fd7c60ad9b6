from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from exam_pipeline.errors import ConfigurationError, ResumabilityError
from exam_pipeline.utils.costs import estimate_transcript_cost
from exam_pipeline.utils.logging_config import configure_file_logging, get_logger
from exam_pipeline.workflow.batch import render_summary_report
from exam_pipeline.workflow.chunking import clean_text
from exam_pipeline.workflow.runner import PipelineRunner
from exam_pipeline.workflow.state import PIPELINE_ORDER, StageStateMachine, describe
from exam_pipeline.workflow.utils.persistence import LessonPaths, open_state_store, remove_stage_outputs, sanitize_name
from exam_pipeline.workflow.utils.settings import PipelineSettings, load_settings
from exam_pipeline.workflow.validation import list_transcripts

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FILES_FAILED = 1
EXIT_UNUSABLE = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Turn lecture transcripts into exam-study material.")
    parser.add_argument("--env-file", default=".env", help="Optional .env file loaded before reading the environment")
    parser.add_argument("--output-dir", default=None, help="Overrides OUTPUT_DIR")
    parser.add_argument("--state-url", default=None, help="State JSON path or SQL URL; overrides STATE_URL")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Process one transcript or every .txt file in a directory")
    run.add_argument("path", nargs="?", default=None, help="Transcript file or directory (defaults to TRANSCRIPT_DIR)")
    run.add_argument("--fresh", action="store_true", help="Ignore saved state and start every lesson from chunking")
    run.add_argument("--only", default=None, help="Process only this file name or lesson")
    run.add_argument("--chunk-size", type=int, default=None, help="Overrides CHUNK_SIZE")
    run.add_argument("--chunk-overlap", type=int, default=None, help="Overrides CHUNK_OVERLAP")

    sub.add_parser("status", help="Show per-lesson stage status")

    reset = sub.add_parser("reset", help="Send a lesson back to a stage so it runs again")
    reset.add_argument("lesson", help="Lesson key (transcript file stem)")
    reset.add_argument("--stage", default=PIPELINE_ORDER[0].value, choices=[stage.value for stage in PIPELINE_ORDER])
    reset.add_argument("--keep-outputs", action="store_true", help="Do not delete artifacts of the reset stages")

    estimate = sub.add_parser("estimate", help="Estimate generation cost before running")
    estimate.add_argument("path", nargs="?", default=None, help="Transcript file or directory")
    return parser.parse_args(argv)


def _settings(args: argparse.Namespace) -> PipelineSettings:
    override = {
        "output_dir": args.output_dir,
        "state_url": args.state_url,
        "chunk_size": getattr(args, "chunk_size", None),
        "chunk_overlap": getattr(args, "chunk_overlap", None),
    }
    return load_settings(override, env_file=args.env_file)


def _run(args: argparse.Namespace, settings: PipelineSettings) -> int:
    runner = PipelineRunner.from_settings(settings)
    runner.load_state(fresh=args.fresh)
    result = runner.run(args.path, only=args.only)
    print(render_summary_report(result))
    return EXIT_FILES_FAILED if result.failed else EXIT_OK


def _status(settings: PipelineSettings) -> int:
    store = open_state_store(settings.resolved_state_url)
    state = store.load()
    if state is None:
        print(f"No pipeline state at {store.location}")
        return EXIT_OK
    print(describe(state))
    return EXIT_OK


def _reset(args: argparse.Namespace, settings: PipelineSettings) -> int:
    store = open_state_store(settings.resolved_state_url)
    state = store.load()
    key = sanitize_name(args.lesson)
    if state is None or key not in state.lessons:
        print(f"Lesson '{key}' not found in {store.location}")
        return EXIT_FILES_FAILED
    StageStateMachine().reset(state.lessons[key], args.stage)
    if not args.keep_outputs:
        paths = LessonPaths.for_lesson(settings.output_dir, key)
        start = [stage.value for stage in PIPELINE_ORDER].index(args.stage)
        for stage in PIPELINE_ORDER[start:]:
            remove_stage_outputs(paths, stage)
    state.refresh_overall_status()
    store.save(state)
    print(describe(state))
    return EXIT_OK


def _estimate(args: argparse.Namespace, settings: PipelineSettings) -> int:
    source = Path(args.path or settings.transcript_dir)
    files = [source] if source.is_file() else list_transcripts(source)
    if not files:
        print(f"No transcripts found at {source}")
        return EXIT_FILES_FAILED
    total = 0.0
    for path in files:
        estimate = estimate_transcript_cost(
            clean_text(path.read_text(encoding="utf-8")), settings.summarizer_model, settings.consolidator_model
        )
        total += estimate["total"]
        print(f"{path.name:<30} ~{estimate['input_tokens']:>8} tokens  ${estimate['total']:.4f}")
    print(f"{'TOTAL':<30} {'':>15}  ${total:.4f}")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = _settings(args)
        configure_file_logging(settings.logs_dir)
        if args.command == "run":
            return _run(args, settings)
        if args.command == "status":
            return _status(settings)
        if args.command == "reset":
            return _reset(args, settings)
        return _estimate(args, settings)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_UNUSABLE
    except ResumabilityError as exc:
        print(f"{exc}\nRe-run with 'run --fresh' to start over.", file=sys.stderr)
        return EXIT_UNUSABLE


if __name__ == "__main__":
    sys.exit(main())
