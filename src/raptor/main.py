"""CLI entrypoint for raptor."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from raptor import __version__
from raptor.quantification.contracts import InputContractError
from raptor.quantification.controllers import (
    QuantificationCliController,
    ScramJobsCommand,
    ScramListCommand,
    ScramLookupCommand,
    ScramRepublishCommand,
    ScramSubmitCommand,
    WorkerCommand,
)
from raptor.quantification.errors import PartialBatchFailureError, QuantificationError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = QuantificationCliController()

T = TypeVar("T")


def db_path_option(func: Callable[..., T]) -> Callable[..., T]:
    return click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help="SQLite DB path (status store and dispatch outbox).",
    )(func)


def artifact_root_option(func: Callable[..., T]) -> Callable[..., T]:
    return click.option(
        "--artifact-root",
        type=click.Path(path_type=Path, file_okay=False),
        default=None,
        help="Directory of the local artifact store.",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="raptor")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def raptor(log_level: str) -> None:
    """RAPTOR quantification orchestrator CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@raptor.group()
def scram() -> None:
    """Submit quantification requests and read job status, artifacts and stats."""


@scram.command("submit")
@db_path_option
@artifact_root_option
@click.argument("request_file", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--distributed-sequences",
    is_flag=True,
    default=False,
    help="Queue one job per event-tree sequence instead of a single job.",
)
@click.option(
    "--adaptive",
    is_flag=True,
    default=False,
    help="Refine truncation until the result converges.",
)
def scram_submit(
    db_path: Path | None,
    artifact_root: Path | None,
    request_file: Path,
    distributed_sequences: bool,
    adaptive: bool,
) -> None:
    """Queue a quantification request read from a JSON file."""

    try:
        lines = CONTROLLER.submit(
            ScramSubmitCommand(
                db_path=db_path,
                artifact_root=artifact_root,
                request_file=request_file,
                distributed_sequences=distributed_sequences,
                adaptive=adaptive,
            ),
        )
    except PartialBatchFailureError as error:
        raise click.ClickException(
            f"{error} (queued: {', '.join(error.enqueued_job_ids)})",
        ) from error
    except (QuantificationError, InputContractError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@scram.command("list")
@db_path_option
@artifact_root_option
def scram_list(db_path: Path | None, artifact_root: Path | None) -> None:
    """Print ids of jobs that finished with an output."""

    _emit_lines(
        CONTROLLER.list_completed(ScramListCommand(db_path=db_path, artifact_root=artifact_root)),
    )


@scram.command("status")
@db_path_option
@artifact_root_option
@click.argument("job_id")
def scram_status(db_path: Path | None, artifact_root: Path | None, job_id: str) -> None:
    """Print the status record of a job or batch root."""

    _run_lookup(CONTROLLER.status, db_path, artifact_root, job_id)


@scram.command("input")
@db_path_option
@artifact_root_option
@click.argument("job_id")
def scram_input(db_path: Path | None, artifact_root: Path | None, job_id: str) -> None:
    """Print the stored request of a job."""

    _run_lookup(CONTROLLER.input, db_path, artifact_root, job_id)


@scram.command("output")
@db_path_option
@artifact_root_option
@click.argument("job_id")
def scram_output(db_path: Path | None, artifact_root: Path | None, job_id: str) -> None:
    """Print the output of a job, or of every member of a batch."""

    _run_lookup(CONTROLLER.output, db_path, artifact_root, job_id)


@scram.command("stats")
@db_path_option
@artifact_root_option
@click.argument("job_id")
def scram_stats(db_path: Path | None, artifact_root: Path | None, job_id: str) -> None:
    """Print own stats plus the stats of every batch member."""

    _run_lookup(CONTROLLER.stats, db_path, artifact_root, job_id)


@scram.command("inspect")
@db_path_option
@artifact_root_option
@click.argument("job_id")
def scram_inspect(db_path: Path | None, artifact_root: Path | None, job_id: str) -> None:
    """Inspect one job with its event history."""

    _run_lookup(CONTROLLER.inspect, db_path, artifact_root, job_id)


@scram.command("republish")
@db_path_option
@artifact_root_option
@click.option(
    "--adaptive",
    is_flag=True,
    default=False,
    help="Queue a retracted single job as adaptive (sequence jobs follow their batch).",
)
@click.argument("job_id")
def scram_republish(
    db_path: Path | None,
    artifact_root: Path | None,
    adaptive: bool,
    job_id: str,
) -> None:
    """Publish the work item of a queued job again.

    A job whose first publish failed is queued again under the same id from its
    stored input.
    """

    command = ScramRepublishCommand(
        db_path=db_path,
        artifact_root=artifact_root,
        job_id=job_id,
        adaptive=adaptive,
    )
    try:
        lines = CONTROLLER.republish(command)
    except QuantificationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@scram.command("jobs")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(["queued", "processing", "completed", "partial", "failed"]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def scram_jobs(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(CONTROLLER.list_jobs(ScramJobsCommand(db_path=db_path, status=status, limit=limit)))


@raptor.command("worker")
@db_path_option
@artifact_root_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker(  # noqa: PLR0913
    db_path: Path | None,
    artifact_root: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Run the reference quantification worker."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                artifact_root=artifact_root,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


def _run_lookup(
    handler: Callable[[ScramLookupCommand], list[str]],
    db_path: Path | None,
    artifact_root: Path | None,
    job_id: str,
) -> None:
    try:
        lines = handler(
            ScramLookupCommand(db_path=db_path, artifact_root=artifact_root, job_id=job_id),
        )
    except QuantificationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    raptor()
