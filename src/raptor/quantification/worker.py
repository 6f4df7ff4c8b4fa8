"""Reference worker that consumes dispatched work items and runs the engine."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from raptor.quantification.artifacts import ArtifactNotFoundError, ArtifactStore, output_key
from raptor.quantification.contracts import (
    InputContractError,
    dump_json,
    load_json,
    parse_job_stats,
    parse_quant_request,
    parse_work_item,
)
from raptor.quantification.dispatch import DeliveredMessage, SqliteDispatchChannel
from raptor.quantification.engine import (
    EngineRunError,
    EngineRunRequest,
    EngineRunResult,
    QuantificationEngine,
)
from raptor.quantification.errors import JobNotFoundError
from raptor.quantification.models import (
    TERMINAL_STATUSES,
    AdaptiveParameters,
    JobStatus,
    QuantRequest,
    TruncationCriteria,
    WorkItem,
)
from raptor.quantification.repository import QuantJobRepository
from raptor.storage.common import epoch_ms

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    partial: int = 0
    failed: int = 0
    skipped: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.partial += other.partial
        self.failed += other.failed
        self.skipped += other.skipped
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class QuantificationOutcome:
    """Result of running one job through the engine, adaptive or not."""

    status: JobStatus
    stats: dict[str, Any]
    output: dict[str, Any]
    iterations: int = 1
    criteria: TruncationCriteria | None = None
    history: list[dict[str, Any]] = field(default_factory=list)


def relative_error(exact: float, approximate: float) -> float:
    """Relative deviation of ``approximate`` from ``exact``; zero when exact is zero."""

    if exact == 0:
        return 0.0
    return abs(exact - approximate) / abs(exact)


class QuantificationWorker:
    """Claims work items from the dispatch channel and reports results to the status store."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QuantJobRepository,
        dispatch: SqliteDispatchChannel,
        artifacts: ArtifactStore,
        engine: QuantificationEngine,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        adaptive_defaults: AdaptiveParameters | None = None,
        engine_timeout_seconds: int = 3600,
    ) -> None:
        self.repository = repository
        self.dispatch = dispatch
        self.artifacts = artifacts
        self.engine = engine
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.adaptive_defaults = adaptive_defaults or AdaptiveParameters()
        self.engine_timeout_seconds = engine_timeout_seconds
        self._stop_requested = False

    def run_once(self) -> WorkerRunSummary:
        """Claim and process at most one work item."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            return summary
        message = self.dispatch.claim_next(worker_id=self.worker_id)
        if message is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            status = self._process(message)
        except Exception:
            # Leave the message for redelivery; the job row keeps its state.
            logger.exception("Worker %s crashed on job %s", self.worker_id, message.job_id)
            self.dispatch.release(job_id=message.job_id)
            raise

        self.dispatch.ack(job_id=message.job_id)
        if status is None:
            summary.skipped = 1
        elif status is JobStatus.COMPLETED:
            summary.completed = 1
        elif status is JobStatus.PARTIAL:
            summary.partial = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until the queue is idle or ``max_jobs`` were processed.

        Args:
            max_jobs: Stop after processing this many work items (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _process(self, message: DeliveredMessage) -> JobStatus | None:
        try:
            item = parse_work_item(message.payload, defaults=self.adaptive_defaults)
        except InputContractError as error:
            logger.error("Dropping malformed work item %s: %s", message.job_id, error)
            return self._fail_if_known(message.job_id, f"Malformed work item: {error}")

        job = self.repository.get_job(job_id=item.job_id)
        if job is None:
            logger.warning("Work item %s has no status record; dropping it", item.job_id)
            return None
        if job.status in TERMINAL_STATUSES:
            logger.info(
                "Job %s already %s; ignoring duplicate delivery #%d",
                item.job_id,
                job.status.value,
                message.delivery_count,
            )
            return None
        if not self.repository.mark_processing(job_id=item.job_id):
            logger.info("Job %s redelivered while processing; running it again", item.job_id)

        started_at = epoch_ms()
        timing = {"startedAt": started_at, "idleTime": max(0, started_at - job.sent_at)}
        try:
            request = parse_quant_request(load_json(self.artifacts.get(item.input_key)))
        except (ArtifactNotFoundError, InputContractError) as error:
            return self._fail(item.job_id, f"Cannot load input: {error}", timing)

        try:
            outcome = self._quantify(item, request)
        except EngineRunError as error:
            logger.warning(
                "Engine failed for job %s (transient=%s): %s",
                item.job_id,
                error.transient,
                error,
            )
            return self._fail(item.job_id, str(error), timing)

        ended_at = epoch_ms()
        stats = {
            **outcome.stats,
            **timing,
            "endedAt": ended_at,
            "executionTime": ended_at - started_at,
        }
        if stats.get("analysisSeconds") is None and stats.get("totalSeconds") is None:
            stats["analysisSeconds"] = (ended_at - started_at) / 1000
        try:
            stats = parse_job_stats(stats)
        except InputContractError as error:
            return self._fail(item.job_id, f"Invalid engine stats: {error}", timing)

        document: dict[str, Any] = {"jobId": item.job_id, "result": outcome.output}
        if item.adaptive:
            document["adaptive"] = {
                "iterations": outcome.iterations,
                "converged": outcome.status is JobStatus.COMPLETED,
                "criteria": outcome.criteria.to_dict() if outcome.criteria is not None else None,
                "history": outcome.history,
            }
        key = output_key(item.job_id, attempt=message.delivery_count)
        self.artifacts.put(key, dump_json(document))
        committed = self.repository.complete_job(
            job_id=item.job_id,
            output_key=key,
            stats=stats,
            status=outcome.status,
            received_at=ended_at,
        )
        if not committed:
            logger.warning(
                "Job %s was finished by another delivery; discarding result of delivery #%d",
                item.job_id,
                message.delivery_count,
            )
            return None
        logger.info("Job %s finished with status %s", item.job_id, outcome.status.value)
        return outcome.status

    def _quantify(self, item: WorkItem, request: QuantRequest) -> QuantificationOutcome:
        if not item.adaptive:
            criteria = _settings_criteria(request, defaults=self.adaptive_defaults)
            result = self._run_engine(item.job_id, request, criteria)
            return QuantificationOutcome(
                status=JobStatus.COMPLETED,
                stats={
                    **result.stats,
                    "probability": result.probability,
                    "products": result.products,
                },
                output=result.output,
                criteria=criteria,
            )
        return self._quantify_adaptive(item, request)

    def _quantify_adaptive(self, item: WorkItem, request: QuantRequest) -> QuantificationOutcome:
        """Widen truncation until the estimate is within tolerance of the exact value."""

        parameters = item.adaptive_parameters or self.adaptive_defaults
        criteria = parameters.initial_criteria
        history: list[dict[str, Any]] = []
        first: EngineRunResult | None = None
        while True:
            result = self._run_engine(item.job_id, request, criteria)
            if first is None:
                first = result
            exact = (
                result.exact_probability
                if result.exact_probability is not None
                else result.probability
            )
            error = relative_error(exact, result.probability)
            history.append(
                {
                    **criteria.to_dict(),
                    "probability": result.probability,
                    "relativeError": error,
                },
            )
            if error <= parameters.tolerance or len(history) >= parameters.max_iterations:
                break
            criteria = parameters.widen(criteria)
            logger.debug(
                "Job %s relative error %.3g above %.3g; widening to %s",
                item.job_id,
                error,
                parameters.tolerance,
                criteria.to_dict(),
            )

        converged = error <= parameters.tolerance
        if not converged:
            logger.warning(
                "Job %s did not converge after %d iterations (relative error %.3g)",
                item.job_id,
                len(history),
                error,
            )
        return QuantificationOutcome(
            status=JobStatus.COMPLETED if converged else JobStatus.PARTIAL,
            stats={
                **result.stats,
                "probability": exact,
                "products": result.products,
                "originalProducts": first.products,
                "exactProbability": exact,
                "approximateProbability": result.probability,
                "relativeError": error,
            },
            output=result.output,
            iterations=len(history),
            criteria=criteria,
            history=history,
        )

    def _run_engine(
        self,
        job_id: str,
        request: QuantRequest,
        criteria: TruncationCriteria,
    ) -> EngineRunResult:
        return self.engine.quantify(
            EngineRunRequest(
                job_id=job_id,
                request=request,
                criteria=criteria,
                timeout_seconds=self.engine_timeout_seconds,
            ),
        )

    def _fail(self, job_id: str, error_summary: str, timing: dict[str, Any]) -> JobStatus:
        ended_at = epoch_ms()
        stats = {
            **timing,
            "endedAt": ended_at,
            "executionTime": ended_at - timing["startedAt"],
        }
        self.repository.fail_job(
            job_id=job_id,
            error_summary=error_summary,
            stats=stats,
            received_at=ended_at,
        )
        return JobStatus.FAILED

    def _fail_if_known(self, job_id: str, error_summary: str) -> JobStatus | None:
        try:
            failed = self.repository.fail_job(job_id=job_id, error_summary=error_summary)
        except JobNotFoundError:
            return None
        return JobStatus.FAILED if failed else None

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Finish the current work item, then leave the loop."""

        if not self._stop_requested:
            logger.info("Worker %s stopping (%s)", self.worker_id, signal_name)
        self._stop_requested = True


def _settings_criteria(request: QuantRequest, *, defaults: AdaptiveParameters) -> TruncationCriteria:
    """Truncation for a plain run: request settings first, configured defaults otherwise."""

    limit_order = request.settings.get("limitOrder", defaults.limit_order)
    cut_off = request.settings.get("cutOff", defaults.cut_off)
    if isinstance(limit_order, bool) or not isinstance(limit_order, int):
        limit_order = defaults.limit_order
    if isinstance(cut_off, bool) or not isinstance(cut_off, int | float):
        cut_off = defaults.cut_off
    return TruncationCriteria(limit_order=limit_order, cut_off=float(cut_off))
