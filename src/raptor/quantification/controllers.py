"""Controllers for quantification CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from raptor.config import Settings
from raptor.quantification.artifacts import FilesystemArtifactStore
from raptor.quantification.contracts import load_json, parse_quant_request
from raptor.quantification.dispatch import SqliteDispatchChannel
from raptor.quantification.engine import CliQuantificationEngine
from raptor.quantification.errors import JobNotFoundError
from raptor.quantification.models import JobStatus
from raptor.quantification.producer import ProducerService
from raptor.quantification.repository import QuantJobRepository
from raptor.quantification.stats import QuantificationStore
from raptor.quantification.worker import QuantificationWorker


@dataclass(slots=True)
class ScramSubmitCommand:
    """CLI input for request submission."""

    db_path: Path | None
    artifact_root: Path | None
    request_file: Path
    distributed_sequences: bool
    adaptive: bool


@dataclass(slots=True)
class ScramLookupCommand:
    """CLI input for reads keyed by one job id."""

    db_path: Path | None
    artifact_root: Path | None
    job_id: str


@dataclass(slots=True)
class ScramRepublishCommand:
    """CLI input for re-publishing one job."""

    db_path: Path | None
    artifact_root: Path | None
    job_id: str
    adaptive: bool = False


@dataclass(slots=True)
class ScramListCommand:
    """CLI input for completed job listing."""

    db_path: Path | None
    artifact_root: Path | None


@dataclass(slots=True)
class ScramJobsCommand:
    """CLI input for job table listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    artifact_root: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class _Services:
    repository: QuantJobRepository
    dispatch: SqliteDispatchChannel
    artifacts: FilesystemArtifactStore


class QuantificationCliController:
    """Coordinates submit, status, artifact and worker CLI operations."""

    def submit(self, command: ScramSubmitCommand) -> list[str]:
        request = parse_quant_request(load_json(command.request_file.read_bytes()))
        settings = Settings.from_env(db_path=command.db_path, artifact_root=command.artifact_root)
        with _services(settings) as services:
            producer = ProducerService(
                repository=services.repository,
                artifacts=services.artifacts,
                dispatch=services.dispatch,
                adaptive_defaults=settings.adaptive.to_parameters(),
                dispatch_concurrency=settings.dispatch.concurrency,
            )
            result = producer.submit(
                request,
                distributed_sequences=command.distributed_sequences,
                adaptive=command.adaptive,
            )
        return _json_lines(result.to_dict())

    def list_completed(self, command: ScramListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, artifact_root=command.artifact_root)
        with _services(settings) as services:
            job_ids = _store(services).list_completed_job_ids()
        return _json_lines(job_ids)

    def status(self, command: ScramLookupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, artifact_root=command.artifact_root)
        with _services(settings) as services:
            record = _store(services).get_status(command.job_id)
        return _json_lines(record.to_dict())

    def input(self, command: ScramLookupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, artifact_root=command.artifact_root)
        with _services(settings) as services:
            data = _store(services).get_input(command.job_id)
        return data.decode("utf-8").splitlines()

    def output(self, command: ScramLookupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, artifact_root=command.artifact_root)
        with _services(settings) as services:
            aggregated = _store(services).get_output(command.job_id)
        return _json_lines(aggregated.to_dict())

    def stats(self, command: ScramLookupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, artifact_root=command.artifact_root)
        with _services(settings) as services:
            report = _store(services).get_job_stats(command.job_id)
        return _json_lines(report.to_dict())

    def republish(self, command: ScramRepublishCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, artifact_root=command.artifact_root)
        with _services(settings) as services:
            producer = ProducerService(
                repository=services.repository,
                artifacts=services.artifacts,
                dispatch=services.dispatch,
                adaptive_defaults=settings.adaptive.to_parameters(),
            )
            producer.republish_queued_job(command.job_id, adaptive=command.adaptive)
        return [f"Work item re-published: job_id={command.job_id}"]

    def list_jobs(self, command: ScramJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = JobStatus(command.status.strip().lower()) if command.status else None
        with _services(settings) as services:
            jobs = services.repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} kind={job.job_kind.value} status={job.status.value} "
                f"adaptive={'yes' if job.adaptive else 'no'} "
                f"parent={job.parent_job_id or '-'}",
            )
        return lines

    def inspect(self, command: ScramLookupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, artifact_root=command.artifact_root)
        with _services(settings) as services:
            job = services.repository.get_job(job_id=command.job_id)
            events = services.repository.get_job_events(job_id=command.job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {command.job_id}")

        lines = [
            f"Job: {job.job_id}",
            f"Kind: {job.job_kind.value}",
            f"Status: {job.status.value}",
            f"Adaptive: {'yes' if job.adaptive else 'no'}",
            f"Parent: {job.parent_job_id or '-'}",
            f"Input: {job.input_key}",
            f"Output: {job.output_key or '-'}",
            f"Error: {job.error_summary or '-'}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, artifact_root=command.artifact_root)
        with _services(settings) as services:
            worker = QuantificationWorker(
                repository=services.repository,
                dispatch=services.dispatch,
                artifacts=services.artifacts,
                engine=CliQuantificationEngine(
                    command_template=settings.worker.engine_command_template,
                    workdir_root=settings.worker.engine_workdir_root,
                ),
                worker_id=settings.worker.worker_id,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                adaptive_defaults=settings.adaptive.to_parameters(),
                engine_timeout_seconds=settings.worker.engine_timeout_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"partial={summary.partial} failed={summary.failed} "
            f"skipped={summary.skipped} idle_polls={summary.idle_polls}",
        ]


def _json_lines(payload: Any) -> list[str]:
    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True).splitlines()


def _store(services: _Services) -> QuantificationStore:
    return QuantificationStore(repository=services.repository, artifacts=services.artifacts)


@contextmanager
def _services(settings: Settings) -> Iterator[_Services]:
    repository = QuantJobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    dispatch = SqliteDispatchChannel(
        db_path=settings.db_path,
        queue=settings.dispatch.queue,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield _Services(
            repository=repository,
            dispatch=dispatch,
            artifacts=FilesystemArtifactStore(settings.artifact_root),
        )
    finally:
        dispatch.close()
        repository.close()
