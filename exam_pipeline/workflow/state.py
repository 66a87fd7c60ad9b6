"""Per-lesson stage tracking for resumable runs.

Each lesson carries one independent status per stage. The state machine only
moves a status forward (``NOT_STARTED -> IN_PROGRESS -> COMPLETED | FAILED``),
allows ``FAILED -> IN_PROGRESS`` for retries and ``IN_PROGRESS -> IN_PROGRESS``
to restart a stage that was interrupted, and otherwise requires an explicit
reset. Persistence is left to the caller, which writes a snapshot after every
transition.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from exam_pipeline.errors import InvalidTransitionError
from exam_pipeline.utils.logging_config import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 2


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Stage(str, Enum):
    CHUNKING = "chunking"
    SUMMARIZATION = "summarization"
    CONSOLIDATION = "consolidation"
    EXAM_MATERIALS = "exam_materials"

    @classmethod
    def from_value(cls, value: str | "Stage") -> "Stage":
        if isinstance(value, cls):
            return value
        normalized = value.strip().lower().replace("-", "_")
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"unknown stage {value!r}")


PIPELINE_ORDER = (Stage.CHUNKING, Stage.SUMMARIZATION, Stage.CONSOLIDATION, Stage.EXAM_MATERIALS)


class StageStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @classmethod
    def from_value(cls, value: Optional[str | "StageStatus"]) -> "StageStatus":
        if isinstance(value, cls):
            return value
        normalized = (value or "").strip().upper()
        for member in cls:
            if member.value == normalized:
                return member
        return _LEGACY_STATUS.get((value or "").strip().lower(), cls.NOT_STARTED)


# Version 1 documents stored chunking/summarization progress as free strings.
_LEGACY_STATUS = {
    "pending": StageStatus.NOT_STARTED,
    "in_progress": StageStatus.IN_PROGRESS,
    "done": StageStatus.COMPLETED,
    "completed": StageStatus.COMPLETED,
    "failed": StageStatus.FAILED,
}
_LEGACY_FIELDS = {"chunks": "chunking_status", "summaries": "summarization_status"}

_TRANSITIONS = {
    StageStatus.NOT_STARTED: {StageStatus.IN_PROGRESS},
    StageStatus.IN_PROGRESS: {StageStatus.IN_PROGRESS, StageStatus.COMPLETED, StageStatus.FAILED},
    StageStatus.FAILED: {StageStatus.IN_PROGRESS},
    StageStatus.COMPLETED: set(),
}


class OverallStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class LessonState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    filename: str
    chunking_status: StageStatus = StageStatus.NOT_STARTED
    summarization_status: StageStatus = StageStatus.NOT_STARTED
    consolidation_status: StageStatus = StageStatus.NOT_STARTED
    exam_materials_status: StageStatus = StageStatus.NOT_STARTED
    stage_errors: Dict[str, str] = Field(default_factory=dict)
    chunks_path: Optional[str] = None
    summaries_dir: Optional[str] = None
    master_notes_path: Optional[str] = None
    exam_materials_dir: Optional[str] = None
    confidence_issues: List[str] = Field(default_factory=list)
    summary_count: int = 0
    last_updated: dt.datetime = Field(default_factory=_utcnow)
    error_message: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_fields(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for legacy, target in _LEGACY_FIELDS.items():
            legacy_value = data.pop(legacy, None)
            # Enum statuses are authoritative; a legacy string only fills a gap.
            if data.get(target) is None and legacy_value is not None:
                data[target] = _LEGACY_STATUS.get(str(legacy_value).strip().lower(), StageStatus.NOT_STARTED)
        for key in ("stage_errors", "confidence_issues", "summary_count", "last_updated"):
            if data.get(key) is None:
                data.pop(key, None)
        return data

    @field_validator(
        "chunking_status", "summarization_status", "consolidation_status", "exam_materials_status", mode="before"
    )
    @classmethod
    def _coerce_status(cls, value):
        return StageStatus.from_value(value)

    def status(self, stage: Stage | str) -> StageStatus:
        return getattr(self, f"{Stage.from_value(stage).value}_status")

    def failure_reason(self, stage: Stage | str) -> Optional[str]:
        return self.stage_errors.get(Stage.from_value(stage).value)

    def statuses(self) -> Dict[Stage, StageStatus]:
        return {stage: self.status(stage) for stage in PIPELINE_ORDER}


class PipelineState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = SCHEMA_VERSION
    timestamp: dt.datetime = Field(default_factory=_utcnow)
    overall_status: OverallStatus = OverallStatus.PENDING
    lessons: Dict[str, LessonState] = Field(default_factory=dict)
    error_log: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _upgrade_schema(cls, data):
        if isinstance(data, dict):
            data = {key: value for key, value in data.items() if value is not None}
            data["schema_version"] = SCHEMA_VERSION
        return data

    def lesson(self, key: str, filename: Optional[str] = None) -> LessonState:
        if key not in self.lessons:
            self.lessons[key] = LessonState(filename=filename or key)
        return self.lessons[key]

    def log_error(self, message: str) -> None:
        self.error_log.append(message)
        self.timestamp = _utcnow()

    def refresh_overall_status(self) -> OverallStatus:
        statuses = [status for lesson in self.lessons.values() for status in lesson.statuses().values()]
        if not statuses or all(status == StageStatus.NOT_STARTED for status in statuses):
            overall = OverallStatus.PENDING
        elif any(status == StageStatus.FAILED for status in statuses):
            overall = OverallStatus.FAILED
        elif all(status == StageStatus.COMPLETED for status in statuses):
            overall = OverallStatus.COMPLETED
        else:
            overall = OverallStatus.IN_PROGRESS
        self.overall_status = overall
        self.timestamp = _utcnow()
        return overall

    def snapshot(self) -> "PipelineState":
        return self.model_copy(deep=True)


class StageStateMachine:
    """Applies stage transitions to a LessonState and stamps ``last_updated``."""

    def __init__(self, clock: Callable[[], dt.datetime] = _utcnow) -> None:
        self._clock = clock

    def transition(
        self,
        lesson: LessonState,
        stage: Stage | str,
        target: StageStatus,
        *,
        reason: Optional[str] = None,
    ) -> LessonState:
        stage = Stage.from_value(stage)
        current = lesson.status(stage)
        if target not in _TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"{lesson.filename}: {stage.value} cannot move from {current.value} to {target.value}"
            )
        setattr(lesson, f"{stage.value}_status", target)
        if target == StageStatus.FAILED:
            message = reason or "stage failed"
            lesson.stage_errors[stage.value] = message
            lesson.error_message = message
        elif target == StageStatus.IN_PROGRESS:
            lesson.stage_errors.pop(stage.value, None)
        lesson.last_updated = self._clock()
        logger.info(
            "Stage transition | lesson=%s stage=%s from=%s to=%s",
            lesson.filename,
            stage.value,
            current.value,
            target.value,
        )
        return lesson

    def start(self, lesson: LessonState, stage: Stage | str) -> LessonState:
        return self.transition(lesson, stage, StageStatus.IN_PROGRESS)

    def complete(self, lesson: LessonState, stage: Stage | str) -> LessonState:
        return self.transition(lesson, stage, StageStatus.COMPLETED)

    def fail(self, lesson: LessonState, stage: Stage | str, reason: str) -> LessonState:
        return self.transition(lesson, stage, StageStatus.FAILED, reason=reason)

    def reset(self, lesson: LessonState, stage: Stage | str = Stage.CHUNKING) -> LessonState:
        """Explicit reset: ``stage`` and every later stage go back to NOT_STARTED."""
        stage = Stage.from_value(stage)
        for later in PIPELINE_ORDER[PIPELINE_ORDER.index(stage):]:
            setattr(lesson, f"{later.value}_status", StageStatus.NOT_STARTED)
            lesson.stage_errors.pop(later.value, None)
        if not lesson.stage_errors:
            lesson.error_message = None
        lesson.last_updated = self._clock()
        logger.info("Stage reset | lesson=%s from_stage=%s", lesson.filename, stage.value)
        return lesson

    @staticmethod
    def next_stage(lesson: LessonState) -> Optional[Stage]:
        """First stage in pipeline order that is not COMPLETED; None when the lesson is done."""
        for stage in PIPELINE_ORDER:
            if lesson.status(stage) != StageStatus.COMPLETED:
                return stage
        return None

    @staticmethod
    def can_resume(lesson: LessonState) -> bool:
        completed = [lesson.status(stage) == StageStatus.COMPLETED for stage in PIPELINE_ORDER]
        return any(completed) and not all(completed)


_GLYPHS = {
    StageStatus.NOT_STARTED: "○",
    StageStatus.IN_PROGRESS: "◐",
    StageStatus.COMPLETED: "✓",
    StageStatus.FAILED: "✗",
}


def describe(state: PipelineState) -> str:
    """Human-readable status table for the CLI."""
    lines = [
        f"Pipeline state ({state.overall_status.value}), updated {state.timestamp.isoformat(timespec='seconds')}",
    ]
    if not state.lessons:
        lines.append("  no lessons recorded")
    for key in sorted(state.lessons):
        lesson = state.lessons[key]
        cells = "  ".join(f"{_GLYPHS[lesson.status(stage)]} {stage.value}" for stage in PIPELINE_ORDER)
        lines.append(f"  {key:<30} {cells}")
        for stage in PIPELINE_ORDER:
            reason = lesson.failure_reason(stage)
            if reason:
                lines.append(f"      {stage.value} failed: {reason}")
        if lesson.confidence_issues:
            lines.append(f"      low-confidence chunks: {', '.join(lesson.confidence_issues)}")
    if state.error_log:
        lines.append(f"  errors logged: {len(state.error_log)}")
    return "\n".join(lines)


__all__ = [
    "PIPELINE_ORDER",
    "SCHEMA_VERSION",
    "LessonState",
    "OverallStatus",
    "PipelineState",
    "Stage",
    "StageStateMachine",
    "StageStatus",
    "describe",
]
