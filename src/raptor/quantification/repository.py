"""Status store: persistent job lifecycle records keyed by job id."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from raptor.quantification.errors import JobNotFoundError
from raptor.quantification.models import (
    TERMINAL_STATUSES,
    BatchKind,
    JobKind,
    JobStatus,
    JobStatusRecord,
    QuantBatchView,
    QuantJobCreate,
    QuantJobEventView,
    QuantJobView,
)
from raptor.storage.alembic_runner import upgrade_head
from raptor.storage.common import (
    build_sqlite_engine,
    epoch_ms,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from raptor.storage.sqlmodel_models import QuantBatch, QuantJob, QuantJobEvent

logger = logging.getLogger(__name__)

_OUTPUT_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.PARTIAL})
_ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)


class QuantJobRepository:
    """Job status persistence facade backed by SQLModel + SQLite.

    Every transition is a conditional UPDATE on a single job id inside one
    transaction, so writers to different jobs never wait on each other beyond
    SQLite's own write lock, and stats/output land together with the status
    they accompany.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- producer side ---------------------------------------------------------

    def create_batch(self, *, batch_id: str, kind: BatchKind, size: int) -> QuantBatchView:
        """Record a batch root before its members are enqueued."""

        with Session(self.engine) as session:
            row = QuantBatch(batch_id=batch_id, kind=kind.value, size=size, created_at=utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_batch_view(row)

    def delete_empty_batch(self, *, batch_id: str) -> bool:
        """Remove a batch root that never got a single member enqueued."""

        with Session(self.engine) as session:
            member = session.exec(
                select(QuantJob.job_id).where(QuantJob.parent_job_id == batch_id).limit(1),
            ).first()
            if member is not None:
                return False
            result = session.exec(sa_delete(QuantBatch).where(col(QuantBatch.batch_id) == batch_id))
            session.commit()
            return result.rowcount == 1

    def create_job(self, payload: QuantJobCreate) -> QuantJobView:
        """Create a QUEUED job."""

        now = utc_now()
        with Session(self.engine) as session:
            row = QuantJob(
                job_id=payload.job_id,
                parent_job_id=payload.parent_job_id,
                sequence_index=payload.sequence_index,
                job_kind=payload.job_kind.value,
                adaptive=payload.adaptive,
                status=JobStatus.QUEUED.value,
                input_key=payload.input_key,
                output_key=None,
                sent_at=payload.sent_at if payload.sent_at is not None else epoch_ms(now),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=payload.job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "job_kind": payload.job_kind.value,
                    "adaptive": payload.adaptive,
                    "parent_job_id": payload.parent_job_id,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def delete_queued_job(self, *, job_id: str) -> bool:
        """Retract a QUEUED job whose work item was never published."""

        with Session(self.engine) as session:
            session.exec(sa_delete(QuantJobEvent).where(col(QuantJobEvent.job_id) == job_id))
            result = session.exec(
                sa_delete(QuantJob).where(
                    col(QuantJob.job_id) == job_id,
                    col(QuantJob.status) == JobStatus.QUEUED.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- worker callback side --------------------------------------------------

    def mark_processing(self, *, job_id: str) -> bool:
        """Move a QUEUED job to PROCESSING."""

        return self._transition(
            job_id=job_id,
            allowed_from=(JobStatus.QUEUED,),
            status_to=JobStatus.PROCESSING,
            event_type="processing",
            values={},
            details={},
        )

    def complete_job(
        self,
        *,
        job_id: str,
        output_key: str,
        stats: dict[str, Any] | None,
        status: JobStatus = JobStatus.COMPLETED,
        received_at: int | None = None,
    ) -> bool:
        """Store output pointer, stats and terminal success status in one write."""

        if status not in _OUTPUT_STATUSES:
            raise ValueError(f"Unsupported completion status: {status}")
        if not output_key:
            raise ValueError("Completed jobs require an output key.")
        return self._transition(
            job_id=job_id,
            allowed_from=(JobStatus.QUEUED, JobStatus.PROCESSING),
            status_to=status,
            event_type=status.value,
            values={
                "output_key": output_key,
                "stats_json": _dump_stats(stats),
                "received_at": received_at if received_at is not None else epoch_ms(),
                "error_summary": None,
            },
            details={"output_key": output_key},
        )

    def fail_job(
        self,
        *,
        job_id: str,
        error_summary: str,
        stats: dict[str, Any] | None = None,
        received_at: int | None = None,
    ) -> bool:
        """Mark a job as FAILED; terminal for this job only."""

        return self._transition(
            job_id=job_id,
            allowed_from=(JobStatus.QUEUED, JobStatus.PROCESSING),
            status_to=JobStatus.FAILED,
            event_type="failed",
            values={
                "error_summary": error_summary,
                "stats_json": _dump_stats(stats),
                "received_at": received_at if received_at is not None else epoch_ms(),
            },
            details={"error_summary": error_summary},
        )

    def put_status(self, *, job_id: str, status: JobStatus) -> None:
        """Overwrite the status of a job (last write wins).

        COMPLETED/PARTIAL are only accepted once an output pointer exists.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(QuantJob).where(QuantJob.job_id == job_id)).one_or_none()
            if row is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            previous = JobStatus(row.status)
            statement = sa_update(QuantJob).where(col(QuantJob.job_id) == job_id)
            if status in _OUTPUT_STATUSES:
                statement = statement.where(col(QuantJob.output_key).is_not(None))
            result = session.exec(
                statement.values(status=status.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ValueError(
                    f"Job {job_id} cannot become {status.value} without a stored output.",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="status_put",
                status_from=previous,
                status_to=status,
                details={},
            )
            session.commit()

    # -- reads -----------------------------------------------------------------

    def get_job(self, *, job_id: str) -> QuantJobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(QuantJob).where(QuantJob.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def get_batch(self, *, batch_id: str) -> QuantBatchView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QuantBatch).where(QuantBatch.batch_id == batch_id),
            ).one_or_none()
        return _to_batch_view(row) if row is not None else None

    def list_batch_jobs(self, *, batch_id: str) -> list[QuantJobView]:
        """List batch members in index order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(QuantJob)
                .where(QuantJob.parent_job_id == batch_id)
                .order_by(col(QuantJob.sequence_index).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def get_status(self, *, job_id: str) -> JobStatusRecord:
        """Return the status record of a job or, for a batch root, its roll-up."""

        job = self.get_job(job_id=job_id)
        if job is not None:
            return JobStatusRecord(
                job_id=job.job_id,
                status=job.status,
                input_id=job.job_id,
                output_id=job.job_id if job.output_key is not None else None,
                parent_job_id=job.parent_job_id,
                error_summary=job.error_summary,
                sent_at=job.sent_at,
                received_at=job.received_at,
            )

        batch = self.get_batch(batch_id=job_id)
        members = self.list_batch_jobs(batch_id=job_id)
        if batch is None and not members:
            raise JobNotFoundError(f"Job not found: {job_id}")

        expected_size = batch.size if batch is not None else len(members)
        status = rollup_batch_status(
            [member.status for member in members],
            expected_size=expected_size,
        )
        terminal = status in TERMINAL_STATUSES
        received = [member.received_at for member in members if member.received_at is not None]
        return JobStatusRecord(
            job_id=job_id,
            status=status,
            input_id=None,
            output_id=job_id if status in _OUTPUT_STATUSES else None,
            sequence_job_ids=[member.job_id for member in members],
            sent_at=min((member.sent_at for member in members), default=None),
            received_at=max(received) if terminal and received else None,
        )

    def list_completed_job_ids(self) -> list[str]:
        """Job ids that finished with a stored output, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(QuantJob.job_id)
                .where(col(QuantJob.status).in_([status.value for status in _OUTPUT_STATUSES]))
                .order_by(col(QuantJob.updated_at).asc(), col(QuantJob.job_id).asc()),
            ).all()
        return [str(job_id) for job_id in rows]

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[QuantJobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(QuantJob).order_by(col(QuantJob.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(QuantJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_events(self, *, job_id: str) -> list[QuantJobEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QuantJobEvent)
                .where(QuantJobEvent.job_id == job_id)
                .order_by(col(QuantJobEvent.created_at).asc(), col(QuantJobEvent.id).asc()),
            ).all()

        events: list[QuantJobEventView] = []
        for row in rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                QuantJobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from else None,
                    status_to=JobStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    # -- internals -------------------------------------------------------------

    def _transition(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        allowed_from: Iterable[JobStatus],
        status_to: JobStatus,
        event_type: str,
        values: dict[str, Any],
        details: dict[str, object],
    ) -> bool:
        now = utc_now()
        allowed = [status.value for status in allowed_from]
        with Session(self.engine) as session:
            row = session.exec(select(QuantJob).where(QuantJob.job_id == job_id)).one_or_none()
            if row is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            if row.status not in allowed:
                logger.debug(
                    "Ignoring %s for job %s in status %s",
                    event_type,
                    job_id,
                    row.status,
                )
                return False
            previous = JobStatus(row.status)
            result = session.exec(
                sa_update(QuantJob)
                .where(
                    col(QuantJob.job_id) == job_id,
                    col(QuantJob.status) == previous.value,
                )
                .values(status=status_to.value, updated_at=to_db_datetime(now), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QuantJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def rollup_batch_status(statuses: list[JobStatus], *, expected_size: int) -> JobStatus:
    """Derive a batch status from the statuses of its members."""

    if not statuses:
        return JobStatus.FAILED
    if any(status.value in _ACTIVE_STATUSES for status in statuses):
        started = any(status is not JobStatus.QUEUED for status in statuses)
        return JobStatus.PROCESSING if started else JobStatus.QUEUED
    if len(statuses) >= expected_size and all(
        status is JobStatus.COMPLETED for status in statuses
    ):
        return JobStatus.COMPLETED
    if all(status is JobStatus.FAILED for status in statuses):
        return JobStatus.FAILED
    return JobStatus.PARTIAL


def _dump_stats(stats: dict[str, Any] | None) -> str | None:
    if stats is None:
        return None
    return json.dumps(stats, ensure_ascii=False, sort_keys=True)


def _to_batch_view(row: QuantBatch) -> QuantBatchView:
    return QuantBatchView(
        batch_id=row.batch_id,
        kind=BatchKind(row.kind),
        size=row.size,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_job_view(row: QuantJob) -> QuantJobView:
    stats: dict[str, Any] | None = None
    if row.stats_json:
        parsed = json.loads(row.stats_json)
        if isinstance(parsed, dict):
            stats = parsed
    return QuantJobView(
        job_id=row.job_id,
        parent_job_id=row.parent_job_id,
        sequence_index=row.sequence_index,
        job_kind=JobKind(row.job_kind),
        adaptive=bool(row.adaptive),
        status=JobStatus(row.status),
        input_key=row.input_key,
        output_key=row.output_key,
        sent_at=row.sent_at,
        received_at=row.received_at,
        stats=stats,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
