"""Create chunked sync job queue tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sync_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("connection_id", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_chunks", sa.Integer(), nullable=False),
        sa.Column("chunk_size", sa.Integer(), nullable=False),
        sa.Column("estimated_item_count", sa.Integer(), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_sync_jobs_account_id", "sync_jobs", ["account_id"])
    op.create_index("ix_sync_jobs_connection_id", "sync_jobs", ["connection_id"])
    op.create_index("ix_sync_jobs_status", "sync_jobs", ["status"])
    op.create_index("idx_sync_jobs_scope_status", "sync_jobs", ["account_id", "status"])

    op.create_table(
        "sync_chunks",
        sa.Column("chunk_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("total_chunks", sa.Integer(), nullable=False),
        sa.Column("start_offset", sa.Integer(), nullable=False),
        sa.Column("end_offset", sa.Integer(), nullable=False),
        sa.Column("estimated_items", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("items_processed", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["sync_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("chunk_id"),
        sa.UniqueConstraint("job_id", "chunk_index", name="uq_sync_chunks_job_index"),
    )
    op.create_index("ix_sync_chunks_job_id", "sync_chunks", ["job_id"])
    op.create_index("ix_sync_chunks_worker_id", "sync_chunks", ["worker_id"])
    op.create_index(
        "idx_sync_chunks_claim",
        "sync_chunks",
        ["status", "chunk_index", "next_attempt_at"],
    )
    op.create_index("idx_sync_chunks_stuck", "sync_chunks", ["status", "started_at"])

    op.create_table(
        "chunk_health_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("chunk_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("item_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_delay_ms", sa.Integer(), nullable=True),
        sa.Column("chunk_size", sa.Integer(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["chunk_id"], ["sync_chunks.chunk_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["job_id"], ["sync_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_chunk_health_records_chunk_id", "chunk_health_records", ["chunk_id"])
    op.create_index(
        "idx_chunk_health_job_time",
        "chunk_health_records",
        ["job_id", "recorded_at"],
    )
    op.create_index(
        "idx_chunk_health_status_time",
        "chunk_health_records",
        ["status", "recorded_at"],
    )

    op.create_table(
        "sync_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("chunk_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["sync_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_events_event_type", "sync_events", ["event_type"])
    op.create_index("idx_sync_events_job_time", "sync_events", ["job_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_sync_events_job_time", table_name="sync_events")
    op.drop_index("ix_sync_events_event_type", table_name="sync_events")
    op.drop_table("sync_events")
    op.drop_index("idx_chunk_health_status_time", table_name="chunk_health_records")
    op.drop_index("idx_chunk_health_job_time", table_name="chunk_health_records")
    op.drop_index("ix_chunk_health_records_chunk_id", table_name="chunk_health_records")
    op.drop_table("chunk_health_records")
    op.drop_index("idx_sync_chunks_stuck", table_name="sync_chunks")
    op.drop_index("idx_sync_chunks_claim", table_name="sync_chunks")
    op.drop_index("ix_sync_chunks_worker_id", table_name="sync_chunks")
    op.drop_index("ix_sync_chunks_job_id", table_name="sync_chunks")
    op.drop_table("sync_chunks")
    op.drop_index("idx_sync_jobs_scope_status", table_name="sync_jobs")
    op.drop_index("ix_sync_jobs_status", table_name="sync_jobs")
    op.drop_index("ix_sync_jobs_connection_id", table_name="sync_jobs")
    op.drop_index("ix_sync_jobs_account_id", table_name="sync_jobs")
    op.drop_table("sync_jobs")
