"""Producer: turns quantification requests into queued jobs."""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from raptor.quantification.artifacts import ArtifactStore, input_key
from raptor.quantification.contracts import (
    dump_json,
    load_json,
    parse_adaptive_parameters,
    parse_quant_request,
    quant_request_to_dict,
    work_item_to_dict,
)
from raptor.quantification.decomposition import EventTreeSequenceExtractor, SequenceExtractor
from raptor.quantification.dispatch import DispatchChannel
from raptor.quantification.errors import (
    DecompositionEmptyError,
    JobNotFoundError,
    PartialBatchFailureError,
    PersistFailureError,
    PublishFailureError,
    QuantificationError,
)
from raptor.quantification.identity import (
    batch_root_of,
    child_id,
    index_of,
    new_root_id,
    parent_of,
)
from raptor.quantification.models import (
    AdaptiveParameters,
    BatchKind,
    JobKind,
    JobStatus,
    QuantJobCreate,
    QuantJobView,
    QuantRequest,
    SubmitResult,
    WorkItem,
)
from raptor.quantification.repository import QuantJobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _UnitSpec:
    job_id: str
    request: QuantRequest
    job_kind: JobKind
    adaptive_parameters: AdaptiveParameters | None = None
    parent_job_id: str | None = None
    sequence_index: int | None = None


class ProducerService:
    """Allocates job ids, persists inputs and status, and publishes work items."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QuantJobRepository,
        artifacts: ArtifactStore,
        dispatch: DispatchChannel,
        extractor: SequenceExtractor | None = None,
        adaptive_defaults: AdaptiveParameters | None = None,
        dispatch_concurrency: int = 4,
    ) -> None:
        self.repository = repository
        self.artifacts = artifacts
        self.dispatch = dispatch
        self.extractor = extractor or EventTreeSequenceExtractor()
        self.adaptive_defaults = adaptive_defaults or AdaptiveParameters()
        self.dispatch_concurrency = max(1, dispatch_concurrency)

    def create_and_queue_quant(self, request: QuantRequest, *, adaptive: bool = False) -> str:
        """Queue the whole request as one job and return its id."""

        parameters = (
            parse_adaptive_parameters(request.adaptive, defaults=self.adaptive_defaults)
            if adaptive
            else None
        )
        job_id = new_root_id()
        self._enqueue_unit(
            _UnitSpec(
                job_id=job_id,
                request=request,
                job_kind=JobKind.SINGLE,
                adaptive_parameters=parameters,
            ),
        )
        logger.info("Queued quantification job %s (adaptive=%s)", job_id, adaptive)
        return job_id

    def create_and_queue_sequence_batch(self, request: QuantRequest) -> list[str]:
        """Queue one job per event-tree sequence; ids are returned in sequence order."""

        return self._enqueue_batch(request, kind=BatchKind.SEQUENCE)

    def create_and_queue_adaptive_sequence_batch(self, request: QuantRequest) -> list[str]:
        """Queue one adaptive job per event-tree sequence."""

        return self._enqueue_batch(request, kind=BatchKind.ADAPTIVE)

    def submit(
        self,
        request: QuantRequest,
        *,
        distributed_sequences: bool = False,
        adaptive: bool = False,
    ) -> SubmitResult:
        """Queue a request the way the submit endpoints do."""

        if not distributed_sequences:
            return SubmitResult(job_id=self.create_and_queue_quant(request, adaptive=adaptive))
        sequence_job_ids = (
            self.create_and_queue_adaptive_sequence_batch(request)
            if adaptive
            else self.create_and_queue_sequence_batch(request)
        )
        return SubmitResult(
            parent_job_id=batch_root_of(sequence_job_ids),
            sequence_job_ids=sequence_job_ids,
        )

    def republish_queued_job(self, job_id: str, *, adaptive: bool = False) -> None:
        """Publish the work item of a QUEUED job again (at-least-once recovery).

        A job retracted after a failed publish has no status row but keeps its
        stored input; it is queued again under the same id. Sequence jobs take
        their adaptive mode from the batch, single jobs from ``adaptive``.
        """

        job = self.repository.get_job(job_id=job_id)
        restored = job is None
        if job is None:
            job = self._restore_retracted_job(job_id, adaptive=adaptive)
        if job.status is not JobStatus.QUEUED:
            raise QuantificationError(
                f"Only queued jobs can be re-published, job {job_id} is {job.status.value}.",
            )
        parameters = None
        if job.adaptive:
            raw = self._load_request(job.input_key).adaptive
            parameters = parse_adaptive_parameters(raw, defaults=self.adaptive_defaults)
        try:
            self._publish(
                WorkItem(
                    job_id=job.job_id,
                    input_key=job.input_key,
                    adaptive=job.adaptive,
                    adaptive_parameters=parameters,
                    parent_job_id=job.parent_job_id,
                    sequence_index=job.sequence_index,
                ),
            )
        except PublishFailureError as error:
            if restored:
                self._retract(job_id, error)
            raise
        logger.info("Re-published work item for job %s", job_id)

    def _restore_retracted_job(self, job_id: str, *, adaptive: bool) -> QuantJobView:
        try:
            key = input_key(job_id)
            stored = self.artifacts.exists(key)
        except ValueError:
            stored = False
        if not stored:
            raise JobNotFoundError(f"Job not found: {job_id}")

        parent_job_id = parent_of(job_id)
        if parent_job_id is None:
            payload = QuantJobCreate(
                job_id=job_id,
                input_key=key,
                job_kind=JobKind.SINGLE,
                adaptive=adaptive,
            )
        else:
            batch = self.repository.get_batch(batch_id=parent_job_id)
            if batch is None:
                raise JobNotFoundError(f"Batch {parent_job_id} of job {job_id} no longer exists.")
            payload = QuantJobCreate(
                job_id=job_id,
                input_key=key,
                job_kind=JobKind.SEQUENCE,
                adaptive=batch.kind is BatchKind.ADAPTIVE,
                parent_job_id=parent_job_id,
                sequence_index=index_of(job_id),
            )
        try:
            job = self.repository.create_job(payload)
        except SQLAlchemyError as error:
            raise PersistFailureError(
                f"Failed to record status for job {job_id}: {error}",
            ) from error
        logger.info("Restored retracted job %s from its stored input", job_id)
        return job

    def _enqueue_batch(self, request: QuantRequest, *, kind: BatchKind) -> list[str]:
        sub_requests = self.extractor.extract(request)
        if not sub_requests:
            raise DecompositionEmptyError(
                "No sequences were extracted from the request; nothing to quantify.",
            )
        parameters = (
            parse_adaptive_parameters(request.adaptive, defaults=self.adaptive_defaults)
            if kind is BatchKind.ADAPTIVE
            else None
        )

        batch_id = new_root_id()
        try:
            self.repository.create_batch(batch_id=batch_id, kind=kind, size=len(sub_requests))
        except SQLAlchemyError as error:
            raise PersistFailureError(f"Failed to record batch {batch_id}: {error}") from error

        units = [
            _UnitSpec(
                job_id=child_id(batch_id, index),
                request=sub_request,
                job_kind=JobKind.SEQUENCE,
                adaptive_parameters=parameters,
                parent_job_id=batch_id,
                sequence_index=index,
            )
            for index, sub_request in enumerate(sub_requests)
        ]
        outcomes = self._fan_out(units)

        enqueued = [units[index].job_id for index, error in outcomes.items() if error is None]
        failures = [(index, error) for index, error in outcomes.items() if error is not None]
        if not failures:
            logger.info(
                "Queued %s batch %s with %d sequence jobs",
                kind.value,
                batch_id,
                len(units),
            )
            return [unit.job_id for unit in units]

        failed_index, cause = failures[0]
        if not enqueued:
            self.repository.delete_empty_batch(batch_id=batch_id)
            raise cause
        logger.warning(
            "Batch %s partially dispatched: %d of %d jobs queued, first failure at index %d",
            batch_id,
            len(enqueued),
            len(units),
            failed_index,
        )
        raise PartialBatchFailureError(
            f"Batch {batch_id} failed to enqueue sequence job at index {failed_index}; "
            f"{len(enqueued)} sibling job(s) remain queued: {cause}",
            batch_id=batch_id,
            failed_index=failed_index,
            enqueued_job_ids=enqueued,
        ) from cause

    def _fan_out(self, units: list[_UnitSpec]) -> dict[int, QuantificationError | None]:
        """Enqueue units, stopping at the first failure.

        Returns the outcome of every attempted unit by index: ``None`` when it
        was queued, otherwise the error it raised. Units never attempted are
        absent.
        """

        outcomes: dict[int, QuantificationError | None] = {}
        if self.dispatch_concurrency == 1 or len(units) == 1:
            for index, unit in enumerate(units):
                try:
                    self._enqueue_unit(unit)
                except QuantificationError as error:
                    outcomes[index] = error
                    break
                outcomes[index] = None
            return outcomes

        with ThreadPoolExecutor(
            max_workers=min(self.dispatch_concurrency, len(units)),
            thread_name_prefix="raptor-dispatch",
        ) as executor:
            futures: list[Future[None]] = [
                executor.submit(self._enqueue_unit, unit) for unit in units
            ]
            wait(futures, return_when=FIRST_EXCEPTION)
            for future in futures:
                future.cancel()

        for index, future in enumerate(futures):
            if future.cancelled():
                continue
            error = future.exception()
            if error is not None and not isinstance(error, QuantificationError):
                raise error
            outcomes[index] = error
        return dict(sorted(outcomes.items()))

    def _enqueue_unit(self, unit: _UnitSpec) -> None:
        key = input_key(unit.job_id)
        try:
            self.artifacts.put(key, dump_json(quant_request_to_dict(unit.request)))
        except Exception as error:  # noqa: BLE001
            raise PersistFailureError(
                f"Failed to persist input for job {unit.job_id}: {error}",
            ) from error

        try:
            self.repository.create_job(
                QuantJobCreate(
                    job_id=unit.job_id,
                    input_key=key,
                    job_kind=unit.job_kind,
                    adaptive=unit.adaptive_parameters is not None,
                    parent_job_id=unit.parent_job_id,
                    sequence_index=unit.sequence_index,
                ),
            )
        except SQLAlchemyError as error:
            raise PersistFailureError(
                f"Failed to record status for job {unit.job_id}: {error}",
            ) from error

        try:
            self._publish(
                WorkItem(
                    job_id=unit.job_id,
                    input_key=key,
                    adaptive=unit.adaptive_parameters is not None,
                    adaptive_parameters=unit.adaptive_parameters,
                    parent_job_id=unit.parent_job_id,
                    sequence_index=unit.sequence_index,
                ),
            )
        except PublishFailureError as error:
            self._retract(unit.job_id, error)
            raise

    def _publish(self, item: WorkItem) -> None:
        try:
            self.dispatch.publish(item.job_id, work_item_to_dict(item))
        except Exception as error:  # noqa: BLE001
            raise PublishFailureError(
                f"Failed to publish work item for job {item.job_id}: {error}",
                job_id=item.job_id,
            ) from error

    def _retract(self, job_id: str, publish_error: PublishFailureError) -> None:
        try:
            retracted = self.repository.delete_queued_job(job_id=job_id)
        except SQLAlchemyError as error:
            logger.exception("Could not retract unpublished job %s", job_id)
            publish_error.add_note(
                f"Job {job_id} could not be retracted and is still recorded as queued: {error}",
            )
            return
        if retracted:
            logger.warning("Retracted job %s after publish failure", job_id)

    def _load_request(self, key: str) -> QuantRequest:
        return parse_quant_request(load_json(self.artifacts.get(key)))
