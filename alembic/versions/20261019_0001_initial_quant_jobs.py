"""Create quantification job, batch, event and dispatch outbox tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "quant_batches",
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("batch_id"),
    )
    op.create_index("ix_quant_batches_kind", "quant_batches", ["kind"], unique=False)

    op.create_table(
        "quant_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("parent_job_id", sa.String(), nullable=True),
        sa.Column("sequence_index", sa.Integer(), nullable=True),
        sa.Column("job_kind", sa.String(), nullable=False),
        sa.Column("adaptive", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("input_key", sa.String(), nullable=False),
        sa.Column("output_key", sa.String(), nullable=True),
        sa.Column("sent_at", sa.BigInteger(), nullable=False),
        sa.Column("received_at", sa.BigInteger(), nullable=True),
        sa.Column("stats_json", sa.Text(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_quant_jobs_parent_job_id", "quant_jobs", ["parent_job_id"], unique=False)
    op.create_index("ix_quant_jobs_job_kind", "quant_jobs", ["job_kind"], unique=False)
    op.create_index("ix_quant_jobs_status", "quant_jobs", ["status"], unique=False)
    op.create_index(
        "idx_quant_jobs_parent_index",
        "quant_jobs",
        ["parent_job_id", "sequence_index"],
        unique=False,
    )
    op.create_index(
        "idx_quant_jobs_status_updated",
        "quant_jobs",
        ["status", "updated_at"],
        unique=False,
    )

    op.create_table(
        "quant_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["quant_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_quant_job_events_event_type",
        "quant_job_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_quant_job_events_job_time",
        "quant_job_events",
        ["job_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "dispatch_messages",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("queue", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("delivery_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("publish_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acked_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index(
        "idx_dispatch_messages_queue",
        "dispatch_messages",
        ["queue", "status", "published_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_dispatch_messages_queue", table_name="dispatch_messages")
    op.drop_table("dispatch_messages")
    op.drop_index("idx_quant_job_events_job_time", table_name="quant_job_events")
    op.drop_index("ix_quant_job_events_event_type", table_name="quant_job_events")
    op.drop_table("quant_job_events")
    op.drop_index("idx_quant_jobs_status_updated", table_name="quant_jobs")
    op.drop_index("idx_quant_jobs_parent_index", table_name="quant_jobs")
    op.drop_index("ix_quant_jobs_status", table_name="quant_jobs")
    op.drop_index("ix_quant_jobs_job_kind", table_name="quant_jobs")
    op.drop_index("ix_quant_jobs_parent_job_id", table_name="quant_jobs")
    op.drop_table("quant_jobs")
    op.drop_index("ix_quant_batches_kind", table_name="quant_batches")
    op.drop_table("quant_batches")
