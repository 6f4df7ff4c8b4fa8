"""Read side: status, artifacts and aggregated stats for jobs and batches."""

from __future__ import annotations

from typing import Any

from raptor.quantification.artifacts import (
    ArtifactNotFoundError,
    ArtifactStore,
    input_key,
    output_key,
)
from raptor.quantification.contracts import INTERNAL_STATS_FIELDS, load_json
from raptor.quantification.errors import JobNotFoundError
from raptor.quantification.models import (
    AggregatedOutput,
    ChildJobStats,
    JobOutputEntry,
    JobStatsReport,
    JobStatusRecord,
    QuantJobView,
)
from raptor.quantification.repository import QuantJobRepository


def normalize_stats(stats: dict[str, Any] | None) -> dict[str, Any] | None:
    """Prepare engine stats for external reporting.

    Legacy ``totalSeconds`` backfills a missing ``analysisSeconds``; engine
    internal fields are never emitted.
    """

    if stats is None:
        return None
    normalized = {key: value for key, value in stats.items() if key not in INTERNAL_STATS_FIELDS}
    analysis_seconds = stats.get("analysisSeconds")
    if analysis_seconds is None:
        analysis_seconds = stats.get("totalSeconds")
    if analysis_seconds is not None:
        normalized["analysisSeconds"] = analysis_seconds
    return normalized


class QuantificationStore:
    """Status store facade combining job rows with stored artifacts."""

    def __init__(self, *, repository: QuantJobRepository, artifacts: ArtifactStore) -> None:
        self.repository = repository
        self.artifacts = artifacts

    def get_status(self, job_id: str) -> JobStatusRecord:
        return self.repository.get_status(job_id=job_id)

    def list_completed_job_ids(self) -> list[str]:
        return self.repository.list_completed_job_ids()

    def put_input(self, job_id: str, data: bytes) -> None:
        self.artifacts.put(input_key(job_id), data)

    def get_input(self, input_id: str) -> bytes:
        """Return the stored request body of a job."""

        job = self.repository.get_job(job_id=input_id)
        try:
            key = job.input_key if job is not None else input_key(input_id)
            return self.artifacts.get(key)
        except (ArtifactNotFoundError, ValueError) as error:
            raise JobNotFoundError(f"Input data with ID {input_id} not found.") from error

    def put_output(self, job_id: str, data: bytes) -> None:
        self.artifacts.put(output_key(job_id), data)

    def get_output(self, job_id: str) -> AggregatedOutput:
        """Return the output of a job, or every member output of a batch root."""

        job = self.repository.get_job(job_id=job_id)
        if job is not None:
            if job.output_key is None:
                raise JobNotFoundError(
                    f"Output for job {job_id} is not available (status={job.status.value}).",
                )
            return AggregatedOutput(
                job_id=job_id,
                status=job.status,
                results=[self._output_entry(job)],
            )

        status = self.repository.get_status(job_id=job_id)
        members = self.repository.list_batch_jobs(batch_id=job_id)
        if status.output_id is None:
            raise JobNotFoundError(
                f"Output for batch {job_id} is not available (status={status.status.value}).",
            )
        return AggregatedOutput(
            job_id=job_id,
            status=status.status,
            results=[self._output_entry(member) for member in members],
        )

    def get_job_stats(self, job_id: str) -> JobStatsReport:
        """Aggregate a job's own stats with those of its batch members."""

        job = self.repository.get_job(job_id=job_id)
        members = self.repository.list_batch_jobs(batch_id=job_id)
        if job is None and not members and self.repository.get_batch(batch_id=job_id) is None:
            raise JobNotFoundError(f"Job stats with ID {job_id} not found.")

        child_stats = [
            ChildJobStats(
                job_id=member.job_id,
                sent_at=member.sent_at,
                received_at=member.received_at,
                stats=normalize_stats(member.stats),
            )
            for member in members
        ]
        if job is not None:
            return JobStatsReport(
                sent_at=job.sent_at,
                received_at=job.received_at,
                stats=normalize_stats(job.stats),
                child_stats=child_stats or None,
            )

        status = self.repository.get_status(job_id=job_id)
        return JobStatsReport(
            sent_at=status.sent_at,
            received_at=status.received_at,
            stats=None,
            child_stats=child_stats,
        )

    def _output_entry(self, job: QuantJobView) -> JobOutputEntry:
        if job.output_key is None:
            return JobOutputEntry(job_id=job.job_id, status=job.status, output=None)
        try:
            payload = load_json(self.artifacts.get(job.output_key))
        except ArtifactNotFoundError as error:
            raise JobNotFoundError(f"Output artifact of job {job.job_id} is missing.") from error
        return JobOutputEntry(job_id=job.job_id, status=job.status, output=payload)
