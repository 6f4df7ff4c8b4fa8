from __future__ import annotations

import allure
import pytest

from raptor.quantification.errors import JobNotFoundError
from raptor.quantification.models import BatchKind, JobKind, JobStatus, QuantJobCreate
from raptor.quantification.repository import QuantJobRepository, rollup_batch_status

pytestmark = [
    allure.epic("Quantification Core"),
    allure.feature("Status Store"),
]


def _create(repository: QuantJobRepository, job_id: str, **kwargs) -> None:
    repository.create_job(
        QuantJobCreate(job_id=job_id, input_key=f"input/{job_id}.json", **kwargs),
    )


def _create_batch(repository: QuantJobRepository, batch_id: str, size: int) -> list[str]:
    repository.create_batch(batch_id=batch_id, kind=BatchKind.SEQUENCE, size=size)
    ids = [f"{batch_id}-{index}" for index in range(size)]
    for index, job_id in enumerate(ids):
        _create(
            repository,
            job_id,
            job_kind=JobKind.SEQUENCE,
            parent_job_id=batch_id,
            sequence_index=index,
            sent_at=1_000 + index,
        )
    return ids


def test_created_job_is_queued_with_event(repository: QuantJobRepository) -> None:
    _create(repository, "J", sent_at=1_700_000_000_000)

    job = repository.get_job(job_id="J")
    assert job is not None
    assert job.status is JobStatus.QUEUED
    assert job.output_key is None
    assert job.sent_at == 1_700_000_000_000
    events = repository.get_job_events(job_id="J")
    assert [event.event_type for event in events] == ["enqueued"]
    assert events[0].status_to is JobStatus.QUEUED


def test_lifecycle_transitions_store_output_and_stats_together(
    repository: QuantJobRepository,
) -> None:
    _create(repository, "J")

    assert repository.mark_processing(job_id="J") is True
    assert repository.mark_processing(job_id="J") is False
    assert repository.complete_job(
        job_id="J",
        output_key="output/J.json",
        stats={"probability": 0.01, "products": 12},
        received_at=5_000,
    )

    job = repository.get_job(job_id="J")
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert job.output_key == "output/J.json"
    assert job.stats == {"probability": 0.01, "products": 12}
    assert job.received_at == 5_000
    assert [event.event_type for event in repository.get_job_events(job_id="J")] == [
        "enqueued",
        "processing",
        "completed",
    ]


def test_terminal_jobs_ignore_late_callbacks(repository: QuantJobRepository) -> None:
    _create(repository, "J")
    repository.fail_job(job_id="J", error_summary="engine crashed")

    assert repository.complete_job(job_id="J", output_key="output/J.json", stats=None) is False
    assert repository.mark_processing(job_id="J") is False
    job = repository.get_job(job_id="J")
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.error_summary == "engine crashed"


def test_completion_requires_output_key(repository: QuantJobRepository) -> None:
    _create(repository, "J")

    with pytest.raises(ValueError, match="output key"):
        repository.complete_job(job_id="J", output_key="", stats=None)
    with pytest.raises(ValueError, match="Unsupported completion status"):
        repository.complete_job(
            job_id="J",
            output_key="output/J.json",
            stats=None,
            status=JobStatus.FAILED,
        )


def test_put_status_never_completes_without_output(repository: QuantJobRepository) -> None:
    _create(repository, "J")

    with pytest.raises(ValueError, match="without a stored output"):
        repository.put_status(job_id="J", status=JobStatus.COMPLETED)
    repository.put_status(job_id="J", status=JobStatus.PROCESSING)

    job = repository.get_job(job_id="J")
    assert job is not None
    assert job.status is JobStatus.PROCESSING
    assert job.output_key is None


def test_put_status_unknown_job_raises(repository: QuantJobRepository) -> None:
    with pytest.raises(JobNotFoundError):
        repository.put_status(job_id="missing", status=JobStatus.FAILED)


def test_transitions_on_unknown_job_raise(repository: QuantJobRepository) -> None:
    with pytest.raises(JobNotFoundError):
        repository.mark_processing(job_id="missing")


def test_get_status_of_single_job_and_unknown_id(repository: QuantJobRepository) -> None:
    _create(repository, "J")

    record = repository.get_status(job_id="J")
    assert record.status is JobStatus.QUEUED
    assert record.input_id == "J"
    assert record.output_id is None
    assert repository.get_status(job_id="J") == record

    with pytest.raises(JobNotFoundError, match="missing"):
        repository.get_status(job_id="missing")


def test_batch_status_rolls_up_members(repository: QuantJobRepository) -> None:
    ids = _create_batch(repository, "B", 3)

    record = repository.get_status(job_id="B")
    assert record.status is JobStatus.QUEUED
    assert record.sequence_job_ids == ids
    assert record.sent_at == 1_000
    assert record.received_at is None

    repository.mark_processing(job_id=ids[0])
    assert repository.get_status(job_id="B").status is JobStatus.PROCESSING

    repository.complete_job(job_id=ids[0], output_key="output/B-0.json", stats={}, received_at=9)
    repository.complete_job(job_id=ids[1], output_key="output/B-1.json", stats={}, received_at=7)
    assert repository.get_status(job_id="B").status is JobStatus.PROCESSING

    repository.fail_job(job_id=ids[2], error_summary="boom", received_at=8)
    record = repository.get_status(job_id="B")
    assert record.status is JobStatus.PARTIAL
    assert record.output_id == "B"
    assert record.received_at == 9


def test_batch_row_without_members_reads_as_failed(repository: QuantJobRepository) -> None:
    repository.create_batch(batch_id="E", kind=BatchKind.ADAPTIVE, size=2)

    assert repository.get_status(job_id="E").status is JobStatus.FAILED
    assert repository.delete_empty_batch(batch_id="E") is True
    with pytest.raises(JobNotFoundError):
        repository.get_status(job_id="E")


def test_delete_empty_batch_keeps_batches_with_members(repository: QuantJobRepository) -> None:
    _create_batch(repository, "B", 1)

    assert repository.delete_empty_batch(batch_id="B") is False
    assert repository.get_batch(batch_id="B") is not None


def test_delete_queued_job_only_removes_queued_rows(repository: QuantJobRepository) -> None:
    _create(repository, "Q")
    _create(repository, "P")
    repository.mark_processing(job_id="P")

    assert repository.delete_queued_job(job_id="Q") is True
    assert repository.get_job(job_id="Q") is None
    assert repository.get_job_events(job_id="Q") == []
    assert repository.delete_queued_job(job_id="P") is False
    assert len(repository.get_job_events(job_id="P")) == 2


def test_list_completed_job_ids_includes_partial_results(repository: QuantJobRepository) -> None:
    _create(repository, "A")
    _create(repository, "B")
    _create(repository, "C")
    repository.complete_job(job_id="A", output_key="output/A.json", stats=None)
    repository.complete_job(
        job_id="B",
        output_key="output/B.json",
        stats=None,
        status=JobStatus.PARTIAL,
    )

    assert repository.list_completed_job_ids() == ["A", "B"]
    assert [job.job_id for job in repository.list_jobs(status=JobStatus.QUEUED)] == ["C"]


def test_batch_members_are_listed_in_index_order(repository: QuantJobRepository) -> None:
    repository.create_batch(batch_id="B", kind=BatchKind.SEQUENCE, size=12)
    for index in (10, 2, 0):
        _create(repository, f"B-{index}", parent_job_id="B", sequence_index=index)

    members = repository.list_batch_jobs(batch_id="B")

    assert [member.job_id for member in members] == ["B-0", "B-2", "B-10"]


@pytest.mark.parametrize(
    ("statuses", "expected_size", "expected"),
    [
        ([], 3, JobStatus.FAILED),
        ([JobStatus.QUEUED, JobStatus.QUEUED], 2, JobStatus.QUEUED),
        ([JobStatus.QUEUED, JobStatus.COMPLETED], 2, JobStatus.PROCESSING),
        ([JobStatus.PROCESSING, JobStatus.FAILED], 2, JobStatus.PROCESSING),
        ([JobStatus.COMPLETED, JobStatus.COMPLETED], 2, JobStatus.COMPLETED),
        ([JobStatus.COMPLETED, JobStatus.COMPLETED], 3, JobStatus.PARTIAL),
        ([JobStatus.FAILED, JobStatus.FAILED], 2, JobStatus.FAILED),
        ([JobStatus.COMPLETED, JobStatus.FAILED], 2, JobStatus.PARTIAL),
        ([JobStatus.PARTIAL, JobStatus.COMPLETED], 2, JobStatus.PARTIAL),
    ],
)
def test_rollup_batch_status(
    statuses: list[JobStatus],
    expected_size: int,
    expected: JobStatus,
) -> None:
    assert rollup_batch_status(statuses, expected_size=expected_size) is expected
