from __future__ import annotations

import csv
import datetime as dt
import io
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from exam_pipeline.errors import BatchClosedError
from exam_pipeline.utils.logging_config import get_logger
from exam_pipeline.utils.types import FileResult

logger = get_logger(__name__)

BANNER = "═" * 64
CSV_HEADER = "Filename,Status,Duration(ms),Cost($),Chunks,Summaries,Error"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass
class BatchResult:
    batch_start_time: Optional[dt.datetime] = None
    batch_end_time: Optional[dt.datetime] = None
    total_files: int = 0
    successful: List[FileResult] = field(default_factory=list)
    failed: List[FileResult] = field(default_factory=list)
    total_cost: float = 0.0
    total_duration_ms: int = 0
    completed: bool = False

    def success_rate(self) -> float:
        if self.total_files == 0:
            return 0.0
        return 100.0 * len(self.successful) / self.total_files

    @property
    def average_cost(self) -> float:
        return self.total_cost / len(self.successful) if self.successful else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_start_time": self.batch_start_time.isoformat() if self.batch_start_time else None,
            "batch_end_time": self.batch_end_time.isoformat() if self.batch_end_time else None,
            "total_files": self.total_files,
            "successful_count": len(self.successful),
            "failed_count": len(self.failed),
            "success_rate": round(self.success_rate(), 2),
            "total_cost": round(self.total_cost, 4),
            "total_duration_ms": self.total_duration_ms,
            "successful": [item.to_dict() for item in self.successful],
            "failed": [item.to_dict() for item in self.failed],
        }


class BatchAggregator:
    """Collects per-file outcomes for one batch run.

    ``complete()`` must be called exactly once; afterwards the result is frozen
    and any further ``record_*`` call raises BatchClosedError.
    """

    def __init__(self, clock: Callable[[], dt.datetime] = _now) -> None:
        self._clock = clock
        self.result = BatchResult()

    def _ensure_open(self) -> None:
        if self.result.completed:
            raise BatchClosedError("batch result is already complete")

    def start(self) -> BatchResult:
        self._ensure_open()
        self.result.batch_start_time = self._clock()
        logger.info("Batch started | at=%s", self.result.batch_start_time.isoformat())
        return self.result

    def record_success(self, filename: str, result: FileResult) -> FileResult:
        self._ensure_open()
        result.filename = filename
        result.status = STATUS_SUCCESS
        result.error_message = None
        self.result.successful.append(result)
        self.result.total_cost += result.cost
        logger.info("File succeeded | file=%s duration_ms=%s cost=%.4f", filename, result.duration_ms, result.cost)
        return result

    def record_failure(self, filename: str, error: BaseException | str) -> FileResult:
        self._ensure_open()
        message = str(error)
        if isinstance(error, BaseException) and not message:
            message = type(error).__name__
        message = " ".join(message.split())
        failure = FileResult(filename=filename, status=STATUS_FAILED, error_message=message)
        self.result.failed.append(failure)
        logger.warning("File failed | file=%s error=%s", filename, message)
        return failure

    def complete(self) -> BatchResult:
        self._ensure_open()
        result = self.result
        result.batch_end_time = self._clock()
        if result.batch_start_time is None:
            result.batch_start_time = result.batch_end_time
        result.total_files = len(result.successful) + len(result.failed)
        elapsed = result.batch_end_time - result.batch_start_time
        result.total_duration_ms = max(0, int(elapsed.total_seconds() * 1000))
        result.completed = True
        logger.info(
            "Batch complete | files=%s ok=%s failed=%s cost=%.4f",
            result.total_files,
            len(result.successful),
            len(result.failed),
            result.total_cost,
        )
        return result


def format_duration(duration_ms: int) -> str:
    seconds = duration_ms // 1000
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def _timestamp(value: Optional[dt.datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def render_summary_report(result: BatchResult) -> str:
    lines = [
        BANNER,
        "BATCH PROCESSING REPORT",
        BANNER,
        f"Started:  {_timestamp(result.batch_start_time)}",
        f"Ended:    {_timestamp(result.batch_end_time)}",
        f"Duration: {format_duration(result.total_duration_ms)}",
        "",
        f"Total files:  {result.total_files}",
        f"Successful:   {len(result.successful)}",
        f"Failed:       {len(result.failed)}",
        f"Success rate: {result.success_rate():.1f}%",
        "",
        f"Total cost:   ${result.total_cost:.4f}",
        f"Average cost: ${result.average_cost:.4f} per successful file",
    ]
    if result.successful:
        lines.extend(["", "Successful files:"])
        for item in result.successful:
            line = f"  ✓ {item.filename:<30} {format_duration(item.duration_ms):>8}  ${item.cost:.4f}"
            if item.degraded_outputs:
                line += f"  [REVIEW: degraded {', '.join(item.degraded_outputs)}]"
            lines.append(line)
    if result.failed:
        lines.extend(["", "Failed files:"])
        lines.extend(f"  ✗ {item.filename:<30} {item.error_message}" for item in result.failed)
    lines.append(BANNER)
    return "\n".join(lines) + "\n"


def render_csv_report(result: BatchResult) -> str:
    """One row per file; fields holding commas, quotes or newlines are quoted with quotes doubled."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER.split(","))
    for item in result.successful:
        writer.writerow(
            [item.filename, STATUS_SUCCESS, item.duration_ms, f"{item.cost:.4f}", item.chunks_created, item.summaries_created, ""]
        )
    for item in result.failed:
        writer.writerow([item.filename, STATUS_FAILED, 0, "0.0000", 0, 0, item.error_message or ""])
    return buffer.getvalue()


__all__ = [
    "BatchAggregator",
    "BatchResult",
    "CSV_HEADER",
    "format_duration",
    "render_csv_report",
    "render_summary_report",
]
