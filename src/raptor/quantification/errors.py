"""Error kinds raised by the quantification core."""

from __future__ import annotations


class QuantificationError(RuntimeError):
    """Base class for orchestration failures surfaced to callers."""


class DecompositionEmptyError(QuantificationError):
    """A request decomposed into zero sequences; nothing was queued."""


class PersistFailureError(QuantificationError):
    """Status store or artifact store rejected a write."""


class PublishFailureError(QuantificationError):
    """Dispatch channel rejected or timed out a publish."""

    def __init__(self, message: str, *, job_id: str) -> None:
        super().__init__(message)
        self.job_id = job_id


class JobNotFoundError(QuantificationError, LookupError):
    """Unknown job, input or output identifier on a read path."""


class PartialBatchFailureError(QuantificationError):
    """Some, but not all, siblings of a batch were enqueued."""

    def __init__(
        self,
        message: str,
        *,
        batch_id: str,
        failed_index: int,
        enqueued_job_ids: list[str],
    ) -> None:
        super().__init__(message)
        self.batch_id = batch_id
        self.failed_index = failed_index
        self.enqueued_job_ids = enqueued_job_ids
