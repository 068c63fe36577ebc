"""SQLModel ORM tables for the chunk queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class SyncJob(SQLModel, table=True):
    __tablename__ = "sync_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_sync_jobs_scope_status", "account_id", "status"),)

    job_id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    connection_id: str = Field(index=True)
    job_type: str
    status: str = Field(index=True)
    window_start: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    window_end: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    total_chunks: int = Field(default=0)
    chunk_size: int
    estimated_item_count: int
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class SyncChunk(SQLModel, table=True):
    __tablename__ = "sync_chunks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "chunk_index", name="uq_sync_chunks_job_index"),
        Index("idx_sync_chunks_claim", "status", "chunk_index", "next_attempt_at"),
        Index("idx_sync_chunks_stuck", "status", "started_at"),
    )

    chunk_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("sync_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    chunk_index: int
    total_chunks: int
    start_offset: int
    end_offset: int
    estimated_items: int
    status: str
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    next_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    error_category: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    processing_time_ms: int | None = None
    items_processed: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ChunkHealthRecord(SQLModel, table=True):
    __tablename__ = "chunk_health_records"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_chunk_health_job_time", "job_id", "recorded_at"),
        Index("idx_chunk_health_status_time", "status", "recorded_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    chunk_id: str = Field(
        sa_column=Column(
            ForeignKey("sync_chunks.chunk_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("sync_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    worker_id: str | None = None
    attempt_number: int
    processing_time_ms: int | None = None
    item_count: int = Field(default=0)
    status: str
    error_category: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    retry_delay_ms: int | None = None
    chunk_size: int | None = None
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SyncEvent(SQLModel, table=True):
    __tablename__ = "sync_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_sync_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("sync_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    chunk_id: str | None = None
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
