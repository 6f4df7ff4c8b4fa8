"""SQLModel ORM tables for quantification job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class QuantBatch(SQLModel, table=True):
    __tablename__ = "quant_batches"  # type: ignore[bad-override]

    batch_id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    size: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QuantJob(SQLModel, table=True):
    __tablename__ = "quant_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_quant_jobs_parent_index", "parent_job_id", "sequence_index"),
        Index("idx_quant_jobs_status_updated", "status", "updated_at"),
    )

    job_id: str = Field(primary_key=True)
    parent_job_id: str | None = Field(default=None, index=True)
    sequence_index: int | None = None
    job_kind: str = Field(index=True)
    adaptive: bool = Field(default=False)
    status: str = Field(index=True)
    input_key: str
    output_key: str | None = None
    sent_at: int = Field(sa_column=Column(BigInteger, nullable=False))
    received_at: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    stats_json: str | None = Field(default=None, sa_column=Column(Text))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QuantJobEvent(SQLModel, table=True):
    __tablename__ = "quant_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_quant_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("quant_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DispatchMessage(SQLModel, table=True):
    __tablename__ = "dispatch_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_dispatch_messages_queue", "queue", "status", "published_at"),)

    job_id: str = Field(primary_key=True)
    queue: str
    status: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    delivery_count: int = Field(default=0)
    publish_count: int = Field(default=1)
    claimed_by: str | None = None
    published_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    acked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
