"""Persistent chunk queue repository."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import Select, func, or_
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from chunk_sync.scheduler.backoff import next_action
from chunk_sync.scheduler.failure_classifier import classify_error
from chunk_sync.scheduler.models import (
    ChunkOutcome,
    ChunkStatus,
    ChunkView,
    CompletionResult,
    DateWindow,
    ErrorCategory,
    FinalizationResult,
    HealthRecordView,
    HealthStatus,
    JobProgress,
    JobStatus,
    JobType,
    RecoveryReport,
    SyncEventView,
    SyncJobCreate,
    SyncJobView,
    SyncScope,
)
from chunk_sync.scheduler.partition import plan_chunks
from chunk_sync.storage.alembic_runner import upgrade_head
from chunk_sync.storage.common import (
    build_engine,
    is_sqlite_url,
    sqlite_url,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from chunk_sync.storage.sqlmodel_models import (
    ChunkHealthRecord,
    SyncChunk,
    SyncEvent,
    SyncJob,
)

logger = logging.getLogger(__name__)

_TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED.value, JobStatus.PARTIAL_FAILURE.value)
# Written on finalization; callers may not supply it.
COMPLETION_METADATA_KEY = "_completion"


class ChunkQueueRepository:
    """Queue persistence facade backed by SQLModel.

    Every public method runs in its own transaction. Chunk rows are only moved by
    compare-and-set updates guarded on the status read in the same transaction, and
    the parent row is only moved by ``_finalize_locked`` while holding its row lock.
    """

    def __init__(
        self,
        database_url: str,
        *,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database_url = database_url
        self.clock = clock
        self.engine = build_engine(database_url=database_url, busy_timeout_ms=busy_timeout_ms)
        # SQLite has no row locks; its writers are serialized by BEGIN IMMEDIATE instead.
        self._row_locks = not is_sqlite_url(database_url)

    @classmethod
    def for_sqlite(
        cls,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], datetime] = utc_now,
    ) -> ChunkQueueRepository:
        return cls(sqlite_url(db_path), busy_timeout_ms=busy_timeout_ms, clock=clock)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.database_url)

    def create_job(self, payload: SyncJobCreate) -> SyncJobView:
        """Create a parent job and all of its chunks in one transaction."""

        if payload.estimated_item_count < 0:
            raise ValueError(
                f"estimated_item_count must be >= 0, got {payload.estimated_item_count}.",
            )
        if payload.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {payload.max_attempts}.")
        if COMPLETION_METADATA_KEY in payload.metadata:
            raise ValueError(f"metadata key {COMPLETION_METADATA_KEY!r} is reserved.")

        ranges = plan_chunks(payload.estimated_item_count, payload.chunk_size)
        now = to_db_datetime(self.clock())
        job_id = payload.job_id or str(uuid4())
        status = JobStatus.PENDING if ranges else JobStatus.COMPLETED

        with Session(self.engine) as session:
            job = SyncJob(
                job_id=job_id,
                account_id=payload.scope.account_id,
                connection_id=payload.scope.connection_id,
                job_type=payload.job_type.value,
                status=status.value,
                window_start=_optional_db_datetime(payload.window.start),
                window_end=_optional_db_datetime(payload.window.end),
                total_chunks=len(ranges),
                chunk_size=payload.chunk_size,
                estimated_item_count=payload.estimated_item_count,
                metadata_json=_dump_json(payload.metadata),
                created_at=now,
                updated_at=now,
                completed_at=now if status is JobStatus.COMPLETED else None,
            )
            session.add(job)
            session.flush()
            for chunk_range in ranges:
                session.add(
                    SyncChunk(
                        chunk_id=str(uuid4()),
                        job_id=job_id,
                        chunk_index=chunk_range.chunk_index,
                        total_chunks=len(ranges),
                        start_offset=chunk_range.start_offset,
                        end_offset=chunk_range.end_offset,
                        estimated_items=chunk_range.size,
                        status=ChunkStatus.PENDING.value,
                        attempts=0,
                        max_attempts=payload.max_attempts,
                        items_processed=0,
                        created_at=now,
                        updated_at=now,
                    ),
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="job_created",
                status_from=None,
                status_to=status.value,
                details={
                    "job_type": payload.job_type.value,
                    "estimated_item_count": payload.estimated_item_count,
                    "chunk_size": payload.chunk_size,
                    "total_chunks": len(ranges),
                    "max_attempts": payload.max_attempts,
                },
            )
            session.flush()
            view = _to_job_view(job)
            session.commit()

        logger.info(
            "Created sync job %s: type=%s estimate=%d chunks=%d status=%s",
            job_id,
            payload.job_type.value,
            payload.estimated_item_count,
            len(ranges),
            status.value,
            extra={"job_id": job_id},
        )
        return view

    def claim_next_chunk(
        self,
        *,
        worker_id: str,
        job_id: str | None = None,
        max_parallel_per_scope: int | None = None,
    ) -> ChunkView | None:
        """Atomically claim the eligible chunk with the lowest index.

        Returns ``None`` when nothing is eligible right now, which does not mean the
        job is complete: chunks may be processing or waiting out a retry delay.
        """

        while True:
            now = to_db_datetime(self.clock())
            with Session(self.engine) as session:
                statement = (
                    select(SyncChunk)
                    .join(SyncJob, col(SyncJob.job_id) == col(SyncChunk.job_id))
                    .where(
                        col(SyncChunk.status) == ChunkStatus.PENDING.value,
                        col(SyncChunk.attempts) < col(SyncChunk.max_attempts),
                        or_(
                            col(SyncChunk.next_attempt_at).is_(None),
                            col(SyncChunk.next_attempt_at) <= now,
                        ),
                    )
                    .order_by(
                        col(SyncChunk.chunk_index).asc(),
                        col(SyncJob.created_at).asc(),
                        col(SyncChunk.chunk_id).asc(),
                    )
                    .limit(1)
                )
                if job_id is not None:
                    statement = statement.where(col(SyncChunk.job_id) == job_id)
                if max_parallel_per_scope:
                    statement = statement.where(
                        col(SyncJob.account_id).not_in(
                            _saturated_accounts(max_parallel_per_scope),
                        ),
                    )
                if self._row_locks:
                    statement = statement.with_for_update(skip_locked=True, of=SyncChunk)

                candidate = session.exec(statement).first()
                if candidate is None:
                    return None

                attempt = candidate.attempts + 1
                result = session.exec(
                    sa_update(SyncChunk)
                    .where(
                        col(SyncChunk.chunk_id) == candidate.chunk_id,
                        col(SyncChunk.status) == ChunkStatus.PENDING.value,
                    )
                    .values(
                        status=ChunkStatus.PROCESSING.value,
                        attempts=attempt,
                        started_at=now,
                        worker_id=worker_id,
                        next_attempt_at=None,
                        completed_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(SyncChunk)
                    .where(SyncChunk.chunk_id == candidate.chunk_id)
                    .execution_options(populate_existing=True),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    chunk_id=claimed.chunk_id,
                    event_type="chunk_claimed",
                    status_from=ChunkStatus.PENDING.value,
                    status_to=ChunkStatus.PROCESSING.value,
                    details={"worker_id": worker_id, "attempt": attempt},
                )
                view = _to_chunk_view(claimed)
                session.commit()

            logger.debug(
                "Worker %s claimed chunk %s (index=%d attempt=%d)",
                worker_id,
                view.chunk_id,
                view.chunk_index,
                view.attempts,
                extra={"job_id": view.job_id, "chunk_id": view.chunk_id, "worker_id": worker_id},
            )
            return view

    def complete_chunk(
        self,
        *,
        chunk_id: str,
        worker_id: str,
        outcome: ChunkOutcome,
    ) -> CompletionResult:
        """Apply a processing outcome and evaluate parent finalization atomically.

        The chunk transition, its health record and the guarded parent status update
        commit together. A worker that no longer owns the chunk gets ``applied=False``
        and only its health record is kept.
        """

        now = self.clock()
        now_db = to_db_datetime(now)
        with Session(self.engine) as session:
            chunk = self._get_chunk_row(session=session, chunk_id=chunk_id)
            owned = (
                chunk.status == ChunkStatus.PROCESSING.value and chunk.worker_id == worker_id
            )
            if not owned:
                return self._reject_stale_completion(
                    session=session,
                    chunk=chunk,
                    worker_id=worker_id,
                    outcome=outcome,
                )

            attempt = chunk.attempts
            category: ErrorCategory | None = None
            delay_ms: int | None = None
            retry_at: datetime | None = None
            if outcome.success:
                target = ChunkStatus.COMPLETED
                health_status = HealthStatus.SUCCESS
                event_type = "chunk_completed"
                values: dict[str, Any] = {
                    "status": target.value,
                    "completed_at": now_db,
                    "items_processed": outcome.items_processed,
                    "error_category": None,
                    "error_message": None,
                }
                details: dict[str, object] = {"items_processed": outcome.items_processed}
            else:
                classification = classify_error(outcome.raw_error)
                category = outcome.error_category or classification.category
                decision = next_action(
                    category,
                    attempt=attempt,
                    max_attempts=chunk.max_attempts,
                )
                health_status = (
                    HealthStatus.TIMEOUT
                    if category is ErrorCategory.TIMEOUT
                    else HealthStatus.ERROR
                )
                details = (
                    classification.to_event_details() if outcome.error_category is None else {}
                )
                details.update(
                    {
                        "error_category": category.value,
                        "attempt": attempt,
                        "reason": decision.reason,
                    },
                )
                if decision.retryable:
                    target = ChunkStatus.PENDING
                    event_type = "retry_scheduled"
                    delay_ms = decision.delay_ms
                    retry_at = now + timedelta(milliseconds=decision.delay_ms)
                    values = {
                        "status": target.value,
                        "next_attempt_at": to_db_datetime(retry_at),
                        "worker_id": None,
                        "started_at": None,
                        "error_category": category.value,
                        "error_message": outcome.raw_error,
                    }
                    details["retry_delay_ms"] = delay_ms
                else:
                    target = ChunkStatus.FAILED
                    event_type = "chunk_failed"
                    values = {
                        "status": target.value,
                        "completed_at": now_db,
                        "error_category": category.value,
                        "error_message": outcome.raw_error,
                    }

            result = session.exec(
                sa_update(SyncChunk)
                .where(
                    col(SyncChunk.chunk_id) == chunk_id,
                    col(SyncChunk.status) == ChunkStatus.PROCESSING.value,
                    col(SyncChunk.worker_id) == worker_id,
                )
                .values(
                    **values,
                    processing_time_ms=outcome.processing_time_ms,
                    updated_at=now_db,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                chunk = self._get_chunk_row(session=session, chunk_id=chunk_id)
                return self._reject_stale_completion(
                    session=session,
                    chunk=chunk,
                    worker_id=worker_id,
                    outcome=outcome,
                )

            self._add_health_record(
                session=session,
                chunk=chunk,
                worker_id=worker_id,
                attempt_number=attempt,
                status=health_status,
                item_count=outcome.items_processed,
                processing_time_ms=outcome.processing_time_ms,
                error_category=category,
                error_message=outcome.raw_error,
                retry_delay_ms=delay_ms,
            )
            self._add_event(
                session=session,
                job_id=chunk.job_id,
                chunk_id=chunk_id,
                event_type=event_type,
                status_from=ChunkStatus.PROCESSING.value,
                status_to=target.value,
                details=details,
            )
            finalization = self._finalize_locked(
                session=session,
                job_id=chunk.job_id,
                now=now,
                trigger_chunk_id=chunk_id,
            )
            job_id = chunk.job_id
            session.commit()

        if category is not None:
            logger.info(
                "Chunk %s attempt %d failed (%s): %s -> %s",
                chunk_id,
                attempt,
                category.value,
                outcome.raw_error,
                target.value,
                extra={
                    "job_id": job_id,
                    "chunk_id": chunk_id,
                    "worker_id": worker_id,
                    "error_category": category.value,
                },
            )
        return CompletionResult(
            applied=True,
            chunk_id=chunk_id,
            job_id=job_id,
            chunk_status=target,
            parent_status=finalization.status,
            remaining_chunks=finalization.remaining_chunks,
            pending_chunks=finalization.pending_chunks,
            finalized=finalization.finalized,
            error_category=category,
            retry_delay_ms=delay_ms,
            next_attempt_at=retry_at,
        )

    def finalize_job(self, *, job_id: str) -> FinalizationResult:
        """Re-evaluate parent status; only the first caller to see all chunks terminal wins."""

        with Session(self.engine) as session:
            finalization = self._finalize_locked(
                session=session,
                job_id=job_id,
                now=self.clock(),
                trigger_chunk_id=None,
            )
            session.commit()
        return finalization

    def recover_stuck_chunks(self, *, timeout_minutes: float) -> RecoveryReport:
        """Reset chunks whose worker died mid-flight.

        The attempt consumed at claim is neither refunded nor charged twice. A stuck
        chunk that already used its last attempt is failed, and its parent is
        finalized in the same transaction.
        """

        if timeout_minutes <= 0:
            raise ValueError(f"timeout_minutes must be > 0, got {timeout_minutes}.")

        now = self.clock()
        now_db = to_db_datetime(now)
        threshold = to_db_datetime(now - timedelta(minutes=timeout_minutes))
        report = RecoveryReport()
        with Session(self.engine) as session:
            statement = (
                select(SyncChunk)
                .where(
                    col(SyncChunk.status) == ChunkStatus.PROCESSING.value,
                    col(SyncChunk.started_at) < threshold,
                )
                .order_by(col(SyncChunk.started_at).asc())
            )
            if self._row_locks:
                statement = statement.with_for_update(skip_locked=True)
            stuck = session.exec(statement).all()

            touched_jobs: set[str] = set()
            for chunk in stuck:
                previous_worker = chunk.worker_id
                exhausted = chunk.attempts >= chunk.max_attempts
                target = ChunkStatus.FAILED if exhausted else ChunkStatus.PENDING
                message = (
                    f"Auto-reset: processing exceeded {timeout_minutes:g} minutes "
                    f"(worker={previous_worker}, attempt={chunk.attempts})"
                )
                values: dict[str, Any] = {
                    "status": target.value,
                    "worker_id": None,
                    "started_at": None,
                    "next_attempt_at": None,
                    "error_category": ErrorCategory.TIMEOUT.value,
                    "error_message": message,
                    "updated_at": now_db,
                }
                if exhausted:
                    values["completed_at"] = now_db
                result = session.exec(
                    sa_update(SyncChunk)
                    .where(
                        col(SyncChunk.chunk_id) == chunk.chunk_id,
                        col(SyncChunk.status) == ChunkStatus.PROCESSING.value,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    continue

                self._add_health_record(
                    session=session,
                    chunk=chunk,
                    worker_id=previous_worker,
                    attempt_number=chunk.attempts,
                    status=HealthStatus.RECOVERY,
                    item_count=0,
                    processing_time_ms=None,
                    error_category=ErrorCategory.TIMEOUT,
                    error_message=message,
                    retry_delay_ms=None,
                )
                self._add_event(
                    session=session,
                    job_id=chunk.job_id,
                    chunk_id=chunk.chunk_id,
                    event_type="chunk_recovered",
                    status_from=ChunkStatus.PROCESSING.value,
                    status_to=target.value,
                    details={"previous_worker_id": previous_worker, "exhausted": exhausted},
                )
                report.chunk_ids.append(chunk.chunk_id)
                if exhausted:
                    report.failed_count += 1
                    touched_jobs.add(chunk.job_id)
                else:
                    report.reset_count += 1

            for job_id in sorted(touched_jobs):
                finalization = self._finalize_locked(
                    session=session,
                    job_id=job_id,
                    now=now,
                    trigger_chunk_id=None,
                )
                if finalization.finalized:
                    report.finalized_job_ids.append(job_id)
            session.commit()

        if report.chunk_ids:
            logger.warning(
                "Recovered %d stuck chunks (reset=%d failed=%d)",
                len(report.chunk_ids),
                report.reset_count,
                report.failed_count,
            )
        return report

    def get_job(self, *, job_id: str) -> SyncJobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(SyncJob).where(SyncJob.job_id == job_id)).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def get_chunk(self, *, chunk_id: str) -> ChunkView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SyncChunk).where(SyncChunk.chunk_id == chunk_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_chunk_view(row)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[SyncJobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(SyncJob).order_by(col(SyncJob.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(SyncJob.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def list_chunks(self, *, job_id: str) -> list[ChunkView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SyncChunk)
                .where(SyncChunk.job_id == job_id)
                .order_by(col(SyncChunk.chunk_index).asc()),
            ).all()
            return [_to_chunk_view(row) for row in rows]

    def next_retry_at(self, *, job_id: str) -> datetime | None:
        """Earliest future ``next_attempt_at`` among the job's retry-delayed chunks."""

        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            value = session.exec(
                select(func.min(SyncChunk.next_attempt_at)).where(
                    col(SyncChunk.job_id) == job_id,
                    col(SyncChunk.status) == ChunkStatus.PENDING.value,
                    col(SyncChunk.attempts) < col(SyncChunk.max_attempts),
                    col(SyncChunk.next_attempt_at) > now,
                ),
            ).one()
        return _optional_aware_datetime(value)

    def get_job_progress(self, *, job_id: str) -> JobProgress | None:
        """Return per-status counts and chunk details for one job."""

        job = self.get_job(job_id=job_id)
        if job is None:
            return None
        chunks = self.list_chunks(job_id=job_id)
        counts = {status: 0 for status in ChunkStatus}
        for chunk in chunks:
            counts[chunk.status] += 1
        return JobProgress(
            job=job,
            total_chunks=len(chunks),
            completed_chunks=counts[ChunkStatus.COMPLETED],
            processing_chunks=counts[ChunkStatus.PROCESSING],
            pending_chunks=counts[ChunkStatus.PENDING],
            failed_chunks=counts[ChunkStatus.FAILED],
            items_processed=sum(chunk.items_processed for chunk in chunks),
            chunks=chunks,
        )

    def list_health_records(
        self,
        *,
        job_id: str | None = None,
        chunk_id: str | None = None,
        since: datetime | None = None,
    ) -> list[HealthRecordView]:
        with Session(self.engine) as session:
            statement = select(ChunkHealthRecord).order_by(
                col(ChunkHealthRecord.recorded_at).asc(),
                col(ChunkHealthRecord.id).asc(),
            )
            if job_id is not None:
                statement = statement.where(ChunkHealthRecord.job_id == job_id)
            if chunk_id is not None:
                statement = statement.where(ChunkHealthRecord.chunk_id == chunk_id)
            if since is not None:
                statement = statement.where(
                    col(ChunkHealthRecord.recorded_at) >= to_db_datetime(since),
                )
            rows = session.exec(statement).all()
            return [_to_health_view(row) for row in rows]

    def list_job_events(self, *, job_id: str) -> list[SyncEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SyncEvent)
                .where(SyncEvent.job_id == job_id)
                .order_by(col(SyncEvent.created_at).asc(), col(SyncEvent.id).asc()),
            ).all()
            return [
                SyncEventView(
                    job_id=row.job_id,
                    chunk_id=row.chunk_id,
                    event_type=row.event_type,
                    status_from=row.status_from,
                    status_to=row.status_to,
                    details=json.loads(row.details_json) if row.details_json else {},
                    created_at=to_utc_aware_datetime(row.created_at),
                )
                for row in rows
            ]

    def prune_health_records(self, *, older_than: timedelta) -> int:
        """Delete health records recorded before ``now - older_than``."""

        cutoff = to_db_datetime(self.clock() - older_than)
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ChunkHealthRecord).where(col(ChunkHealthRecord.recorded_at) < cutoff),
            )
            session.commit()
            deleted = result.rowcount or 0
        if deleted:
            logger.info("Pruned %d health records older than %s", deleted, older_than)
        return deleted

    def _finalize_locked(
        self,
        *,
        session: Session,
        job_id: str,
        now: datetime,
        trigger_chunk_id: str | None,
    ) -> FinalizationResult:
        statement = select(SyncJob).where(SyncJob.job_id == job_id)
        if self._row_locks:
            statement = statement.with_for_update()
        job = session.exec(statement).one_or_none()
        if job is None:
            raise RuntimeError(f"Sync job not found: {job_id}")

        counts = {status: 0 for status in ChunkStatus}
        rows = session.exec(
            select(SyncChunk.status, func.count())
            .where(SyncChunk.job_id == job_id)
            .group_by(SyncChunk.status),
        ).all()
        for status_value, count in rows:
            counts[ChunkStatus(status_value)] = count
        total = sum(counts.values())
        completed = counts[ChunkStatus.COMPLETED]
        failed = counts[ChunkStatus.FAILED]
        pending = counts[ChunkStatus.PENDING]
        remaining = pending + counts[ChunkStatus.PROCESSING]

        current = JobStatus(job.status)
        if completed == total:
            target = JobStatus.COMPLETED
        elif completed + failed == total:
            target = JobStatus.PARTIAL_FAILURE
        else:
            target = JobStatus.PROCESSING

        if current.is_terminal or target is current:
            return FinalizationResult(
                job_id=job_id,
                status=current,
                finalized=False,
                remaining_chunks=remaining,
                pending_chunks=pending,
            )

        now_db = to_db_datetime(now)
        values: dict[str, Any] = {"status": target.value, "updated_at": now_db}
        summary: dict[str, object] = {}
        if target.is_terminal:
            items_processed = session.exec(
                select(func.coalesce(func.sum(SyncChunk.items_processed), 0)).where(
                    SyncChunk.job_id == job_id,
                ),
            ).one()
            summary = {
                "chunks_completed": completed,
                "chunks_failed": failed,
                "items_processed": int(items_processed),
                "finalized_by_chunk_id": trigger_chunk_id,
            }
            metadata = _load_json(job.metadata_json)
            metadata[COMPLETION_METADATA_KEY] = summary
            values["completed_at"] = now_db
            values["metadata_json"] = _dump_json(metadata)

        result = session.exec(
            sa_update(SyncJob)
            .where(
                col(SyncJob.job_id) == job_id,
                col(SyncJob.status) == current.value,
                col(SyncJob.status).not_in(_TERMINAL_JOB_STATUSES),
            )
            .values(**values),
        )
        if result.rowcount != 1:
            return FinalizationResult(
                job_id=job_id,
                status=current,
                finalized=False,
                remaining_chunks=remaining,
                pending_chunks=pending,
            )

        self._add_event(
            session=session,
            job_id=job_id,
            chunk_id=trigger_chunk_id,
            event_type="job_finalized" if target.is_terminal else "job_status_changed",
            status_from=current.value,
            status_to=target.value,
            details=summary,
        )
        if target.is_terminal:
            logger.info(
                "Sync job %s finalized as %s (completed=%d failed=%d)",
                job_id,
                target.value,
                completed,
                failed,
                extra={"job_id": job_id},
            )
        return FinalizationResult(
            job_id=job_id,
            status=target,
            finalized=target.is_terminal,
            remaining_chunks=remaining,
            pending_chunks=pending,
        )

    def _reject_stale_completion(
        self,
        *,
        session: Session,
        chunk: SyncChunk,
        worker_id: str,
        outcome: ChunkOutcome,
    ) -> CompletionResult:
        category = (
            None
            if outcome.success
            else outcome.error_category or classify_error(outcome.raw_error).category
        )
        message = (
            f"Completion rejected: chunk is {chunk.status} "
            f"and owned by {chunk.worker_id or 'nobody'}"
        )
        if outcome.raw_error:
            message = f"{message}; {outcome.raw_error}"
        self._add_health_record(
            session=session,
            chunk=chunk,
            worker_id=worker_id,
            attempt_number=chunk.attempts,
            status=HealthStatus.ERROR,
            item_count=outcome.items_processed,
            processing_time_ms=outcome.processing_time_ms,
            error_category=category,
            error_message=message,
            retry_delay_ms=None,
        )
        job = session.exec(select(SyncJob).where(SyncJob.job_id == chunk.job_id)).one()
        counts = dict(
            session.exec(
                select(SyncChunk.status, func.count())
                .where(SyncChunk.job_id == chunk.job_id)
                .group_by(SyncChunk.status),
            ).all(),
        )
        pending = counts.get(ChunkStatus.PENDING.value, 0)
        result = CompletionResult(
            applied=False,
            chunk_id=chunk.chunk_id,
            job_id=chunk.job_id,
            chunk_status=ChunkStatus(chunk.status),
            parent_status=JobStatus(job.status),
            remaining_chunks=pending + counts.get(ChunkStatus.PROCESSING.value, 0),
            pending_chunks=pending,
            finalized=False,
            error_category=category,
        )
        session.commit()
        logger.warning(
            "Worker %s lost ownership of chunk %s; completion ignored",
            worker_id,
            chunk.chunk_id,
            extra={"job_id": result.job_id, "chunk_id": result.chunk_id, "worker_id": worker_id},
        )
        return result

    def _get_chunk_row(self, *, session: Session, chunk_id: str) -> SyncChunk:
        statement = select(SyncChunk).where(SyncChunk.chunk_id == chunk_id)
        if self._row_locks:
            statement = statement.with_for_update()
        row = session.exec(statement.execution_options(populate_existing=True)).one_or_none()
        if row is None:
            raise RuntimeError(f"Chunk not found: {chunk_id}")
        return row

    def _add_health_record(  # noqa: PLR0913
        self,
        *,
        session: Session,
        chunk: SyncChunk,
        worker_id: str | None,
        attempt_number: int,
        status: HealthStatus,
        item_count: int,
        processing_time_ms: int | None,
        error_category: ErrorCategory | None,
        error_message: str | None,
        retry_delay_ms: int | None,
    ) -> None:
        session.add(
            ChunkHealthRecord(
                chunk_id=chunk.chunk_id,
                job_id=chunk.job_id,
                worker_id=worker_id,
                attempt_number=attempt_number,
                processing_time_ms=processing_time_ms,
                item_count=item_count,
                status=status.value,
                error_category=error_category.value if error_category is not None else None,
                error_message=error_message,
                retry_delay_ms=retry_delay_ms,
                chunk_size=chunk.estimated_items,
                recorded_at=to_db_datetime(self.clock()),
            ),
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: str | None,
        status_to: str | None,
        details: dict[str, object],
        chunk_id: str | None = None,
    ) -> None:
        session.add(
            SyncEvent(
                job_id=job_id,
                chunk_id=chunk_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self.clock()),
            ),
        )


def _saturated_accounts(limit: int) -> Select[tuple[str]]:
    busy_chunk = aliased(SyncChunk)
    busy_job = aliased(SyncJob)
    return (
        sa_select(busy_job.account_id)
        .join(busy_chunk, busy_chunk.job_id == busy_job.job_id)
        .where(busy_chunk.status == ChunkStatus.PROCESSING.value)
        .group_by(busy_job.account_id)
        .having(func.count() >= limit)
    )


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _optional_aware_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _dump_json(value: dict[str, Any]) -> str | None:
    if not value:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    loaded = json.loads(value)
    return loaded if isinstance(loaded, dict) else {}


def _to_job_view(row: SyncJob) -> SyncJobView:
    return SyncJobView(
        job_id=row.job_id,
        scope=SyncScope(account_id=row.account_id, connection_id=row.connection_id),
        job_type=JobType(row.job_type),
        status=JobStatus(row.status),
        window=DateWindow(
            start=_optional_aware_datetime(row.window_start),
            end=_optional_aware_datetime(row.window_end),
        ),
        total_chunks=row.total_chunks,
        chunk_size=row.chunk_size,
        estimated_item_count=row.estimated_item_count,
        metadata=_load_json(row.metadata_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=_optional_aware_datetime(row.completed_at),
    )


def _to_chunk_view(row: SyncChunk) -> ChunkView:
    return ChunkView(
        chunk_id=row.chunk_id,
        job_id=row.job_id,
        chunk_index=row.chunk_index,
        total_chunks=row.total_chunks,
        start_offset=row.start_offset,
        end_offset=row.end_offset,
        estimated_items=row.estimated_items,
        status=ChunkStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        next_attempt_at=_optional_aware_datetime(row.next_attempt_at),
        error_category=ErrorCategory(row.error_category) if row.error_category else None,
        error_message=row.error_message,
        worker_id=row.worker_id,
        started_at=_optional_aware_datetime(row.started_at),
        completed_at=_optional_aware_datetime(row.completed_at),
        processing_time_ms=row.processing_time_ms,
        items_processed=row.items_processed,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_health_view(row: ChunkHealthRecord) -> HealthRecordView:
    return HealthRecordView(
        chunk_id=row.chunk_id,
        job_id=row.job_id,
        worker_id=row.worker_id,
        attempt_number=row.attempt_number,
        processing_time_ms=row.processing_time_ms,
        item_count=row.item_count,
        status=HealthStatus(row.status),
        error_category=ErrorCategory(row.error_category) if row.error_category else None,
        error_message=row.error_message,
        retry_delay_ms=row.retry_delay_ms,
        chunk_size=row.chunk_size,
        recorded_at=to_utc_aware_datetime(row.recorded_at),
    )
