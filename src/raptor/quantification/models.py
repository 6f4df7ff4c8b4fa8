"""Domain models for quantification jobs, batches and reports."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Job lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.PARTIAL, JobStatus.FAILED})


class JobKind(str, Enum):
    """How a job came to exist."""

    SINGLE = "single"
    SEQUENCE = "sequence"


class BatchKind(str, Enum):
    SEQUENCE = "sequence"
    ADAPTIVE = "adaptive"


@dataclass(slots=True, frozen=True)
class TruncationCriteria:
    """Cut-set truncation limits handed to the engine."""

    limit_order: int
    cut_off: float

    def to_dict(self) -> dict[str, Any]:
        return {"limitOrder": self.limit_order, "cutOff": self.cut_off}


@dataclass(slots=True, frozen=True)
class AdaptiveParameters:
    """Initial truncation and convergence policy for adaptive quantification."""

    limit_order: int = 3
    cut_off: float = 1e-8
    tolerance: float = 0.05
    max_iterations: int = 4
    widen_factor: float = 10.0
    limit_order_step: int = 1

    @property
    def initial_criteria(self) -> TruncationCriteria:
        return TruncationCriteria(limit_order=self.limit_order, cut_off=self.cut_off)

    def widen(self, criteria: TruncationCriteria) -> TruncationCriteria:
        """Return looser truncation criteria for the next iteration."""

        return TruncationCriteria(
            limit_order=criteria.limit_order + self.limit_order_step,
            cut_off=criteria.cut_off / self.widen_factor,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "limitOrder": self.limit_order,
            "cutOff": self.cut_off,
            "tolerance": self.tolerance,
            "maxIterations": self.max_iterations,
            "widenFactor": self.widen_factor,
            "limitOrderStep": self.limit_order_step,
        }


@dataclass(slots=True)
class QuantRequest:
    """Quantification request as received from a client.

    ``model`` and ``settings`` are opaque to the orchestrator apart from the
    event-tree listing used for sequence decomposition.
    """

    model: dict[str, Any]
    settings: dict[str, Any] = field(default_factory=dict)
    target_sequence: dict[str, str] | None = None
    adaptive: dict[str, Any] | None = None

    def for_sequence(self, *, event_tree: str, sequence: str) -> QuantRequest:
        return replace(
            self,
            target_sequence={"eventTree": event_tree, "sequence": sequence},
        )


@dataclass(slots=True)
class WorkItem:
    """Payload published on the dispatch channel for one job."""

    job_id: str
    input_key: str
    adaptive: bool = False
    adaptive_parameters: AdaptiveParameters | None = None
    parent_job_id: str | None = None
    sequence_index: int | None = None


@dataclass(slots=True)
class QuantJobCreate:
    """Input payload for creating a QUEUED job row."""

    job_id: str
    input_key: str
    job_kind: JobKind = JobKind.SINGLE
    adaptive: bool = False
    parent_job_id: str | None = None
    sequence_index: int | None = None
    sent_at: int | None = None


@dataclass(slots=True)
class QuantJobView:
    """Readable job row."""

    job_id: str
    parent_job_id: str | None
    sequence_index: int | None
    job_kind: JobKind
    adaptive: bool
    status: JobStatus
    input_key: str
    output_key: str | None
    sent_at: int
    received_at: int | None
    stats: dict[str, Any] | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class QuantBatchView:
    """Stored batch root."""

    batch_id: str
    kind: BatchKind
    size: int
    created_at: datetime


@dataclass(slots=True)
class QuantJobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobStatusRecord:
    """Status record returned for a job or a batch root."""

    job_id: str
    status: JobStatus
    input_id: str | None
    output_id: str | None
    parent_job_id: str | None = None
    sequence_job_ids: list[str] | None = None
    error_summary: str | None = None
    sent_at: int | None = None
    received_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "jobId": self.job_id,
            "status": self.status.value,
            "inputId": self.input_id,
            "outputId": self.output_id,
            "parentJobId": self.parent_job_id,
            "sequenceJobIds": self.sequence_job_ids,
            "errorSummary": self.error_summary,
            "sentAt": self.sent_at,
            "receivedAt": self.received_at,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class ChildJobStats:
    """Stats of one batch member inside an aggregated report."""

    job_id: str
    sent_at: int | None
    received_at: int | None
    stats: dict[str, Any] | None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "jobId": self.job_id,
            "sentAt": self.sent_at,
            "receivedAt": self.received_at,
            "stats": self.stats,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class JobStatsReport:
    """Aggregated job view: own stats plus the stats of every batch member."""

    sent_at: int | None
    received_at: int | None
    stats: dict[str, Any] | None
    child_stats: list[ChildJobStats] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sentAt": self.sent_at,
            "receivedAt": self.received_at,
            "stats": self.stats,
        }
        if self.child_stats is not None:
            payload["childStats"] = [child.to_dict() for child in self.child_stats]
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class JobOutputEntry:
    job_id: str
    status: JobStatus
    output: dict[str, Any] | None


@dataclass(slots=True)
class AggregatedOutput:
    """Output of a job, or of every member of a batch in index order."""

    job_id: str
    status: JobStatus
    results: list[JobOutputEntry]

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": self.status.value,
            "results": [
                {"jobId": entry.job_id, "status": entry.status.value, "output": entry.output}
                for entry in self.results
            ],
        }


@dataclass(slots=True)
class SubmitResult:
    """Response shape of a submit call: single job or batch."""

    job_id: str | None = None
    parent_job_id: str | None = None
    sequence_job_ids: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.sequence_job_ids is not None:
            return {"parentJobId": self.parent_job_id, "sequenceJobIds": self.sequence_job_ids}
        return {"jobId": self.job_id}
