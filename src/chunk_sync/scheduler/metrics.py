"""Health aggregation and operator-facing report lines."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from chunk_sync.scheduler.models import HealthRecordView, HealthStatus, JobProgress


@dataclass(slots=True)
class HealthSummary:
    """Windowed aggregate over chunk health records."""

    window_hours: int
    total_records: int = 0
    status_counts: dict[str, int] = field(default_factory=dict)
    items_processed: int = 0
    avg_processing_time_ms: float | None = None
    min_processing_time_ms: int | None = None
    max_processing_time_ms: int | None = None
    error_categories: dict[str, int] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return self.status_counts.get(HealthStatus.SUCCESS.value, 0)

    @property
    def failure_count(self) -> int:
        return self.status_counts.get(HealthStatus.ERROR.value, 0) + self.status_counts.get(
            HealthStatus.TIMEOUT.value,
            0,
        )

    @property
    def overall_health(self) -> str:
        if self.failure_count > self.success_count:
            return "degraded"
        if self.failure_count > 0:
            return "warning"
        return "healthy"

    def error_breakdown(self) -> dict[str, float]:
        """Share of each error category among failed attempts."""

        total = sum(self.error_categories.values())
        if total == 0:
            return {}
        return {key: value / total for key, value in sorted(self.error_categories.items())}


def build_health_summary(
    *,
    records: list[HealthRecordView],
    window_hours: int,
) -> HealthSummary:
    """Aggregate health records; recovery records count toward totals only."""

    status_counts: Counter[str] = Counter(record.status.value for record in records)
    error_categories: Counter[str] = Counter(
        record.error_category.value
        for record in records
        if record.status in {HealthStatus.ERROR, HealthStatus.TIMEOUT}
        and record.error_category is not None
    )
    durations = [
        record.processing_time_ms
        for record in records
        if record.processing_time_ms is not None and record.status is not HealthStatus.RECOVERY
    ]
    return HealthSummary(
        window_hours=window_hours,
        total_records=len(records),
        status_counts=dict(status_counts),
        items_processed=sum(
            record.item_count for record in records if record.status is HealthStatus.SUCCESS
        ),
        avg_processing_time_ms=(sum(durations) / len(durations)) if durations else None,
        min_processing_time_ms=min(durations) if durations else None,
        max_processing_time_ms=max(durations) if durations else None,
        error_categories=dict(error_categories),
    )


def render_health_lines(*, summary: HealthSummary) -> list[str]:
    """Render health summary lines for CLI output."""

    lines = [
        f"Chunk health (window={summary.window_hours}h): {summary.overall_health}",
        f"Attempts: {summary.total_records} "
        + (_fmt_key_value(summary.status_counts) or "success=0"),
        f"Items processed: {summary.items_processed}",
        (
            "Processing time ms: "
            f"avg={_fmt_number(summary.avg_processing_time_ms)} "
            f"min={_fmt_number(summary.min_processing_time_ms)} "
            f"max={_fmt_number(summary.max_processing_time_ms)}"
        ),
        "Error categories: " + (_fmt_key_value(summary.error_categories) or "none"),
    ]
    breakdown = summary.error_breakdown()
    if breakdown:
        lines.append(
            "Error share: "
            + " ".join(f"{key}={_fmt_ratio(value)}" for key, value in breakdown.items()),
        )
    return lines


def render_progress_lines(*, progress: JobProgress) -> list[str]:
    """Render one job's progress and its non-completed chunks."""

    job = progress.job
    lines = [
        f"Job {job.job_id}: status={job.status.value} type={job.job_type.value} "
        f"account={job.scope.account_id} connection={job.scope.connection_id}",
        f"Chunks: total={progress.total_chunks} completed={progress.completed_chunks} "
        f"processing={progress.processing_chunks} pending={progress.pending_chunks} "
        f"failed={progress.failed_chunks}",
        f"Progress: {progress.overall_progress:.2f}% "
        f"items_processed={progress.items_processed}/{job.estimated_item_count}",
    ]
    for chunk in progress.chunks:
        if chunk.status.is_terminal and chunk.error_category is None:
            continue
        lines.append(
            f"- chunk {chunk.chunk_index} [{chunk.start_offset}-{chunk.end_offset}] "
            f"status={chunk.status.value} attempts={chunk.attempts}/{chunk.max_attempts} "
            f"error={chunk.error_category.value if chunk.error_category else '-'} "
            f"message={chunk.error_message or '-'}",
        )
    return lines


def _fmt_number(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.0f}"


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
