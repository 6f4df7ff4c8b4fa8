from __future__ import annotations

from pathlib import Path

import allure

from raptor.quantification.dispatch import SqliteDispatchChannel

pytestmark = [
    allure.epic("Quantification Core"),
    allure.feature("Dispatch Channel"),
]


def test_publish_claim_ack_cycle(dispatch: SqliteDispatchChannel) -> None:
    dispatch.publish("R-0", {"jobId": "R-0"})
    dispatch.publish("R-1", {"jobId": "R-1"})
    assert dispatch.pending_count() == 2

    first = dispatch.claim_next(worker_id="w1")
    second = dispatch.claim_next(worker_id="w2")

    assert first is not None
    assert second is not None
    assert {first.job_id, second.job_id} == {"R-0", "R-1"}
    assert first.payload == {"jobId": first.job_id}
    assert first.delivery_count == 1
    assert dispatch.claim_next(worker_id="w3") is None

    dispatch.ack(job_id=first.job_id)
    dispatch.ack(job_id=second.job_id)
    assert dispatch.pending_count() == 0


def test_republish_is_idempotent_per_job_id(dispatch: SqliteDispatchChannel) -> None:
    dispatch.publish("J", {"jobId": "J", "attempt": 1})
    dispatch.publish("J", {"jobId": "J", "attempt": 2})

    assert dispatch.pending_count() == 1
    message = dispatch.claim_next(worker_id="w")
    assert message is not None
    assert message.payload["attempt"] == 2


def test_release_returns_message_for_redelivery(dispatch: SqliteDispatchChannel) -> None:
    dispatch.publish("J", {"jobId": "J"})
    claimed = dispatch.claim_next(worker_id="w")
    assert claimed is not None

    dispatch.release(job_id="J")
    redelivered = dispatch.claim_next(worker_id="w")

    assert redelivered is not None
    assert redelivered.delivery_count == 2


def test_acked_message_is_not_redelivered_on_republish(dispatch: SqliteDispatchChannel) -> None:
    dispatch.publish("J", {"jobId": "J"})
    dispatch.claim_next(worker_id="w")
    dispatch.ack(job_id="J")

    dispatch.publish("J", {"jobId": "J", "late": True})

    assert dispatch.claim_next(worker_id="w") is None


def test_queues_are_isolated(db_path: Path, dispatch: SqliteDispatchChannel) -> None:
    other = SqliteDispatchChannel(db_path, queue="other")
    try:
        other.publish("X", {"jobId": "X"})

        assert dispatch.claim_next(worker_id="w") is None
        assert other.claim_next(worker_id="w") is not None
    finally:
        other.close()


def test_republish_requeues_a_stale_claim(dispatch: SqliteDispatchChannel) -> None:
    dispatch.publish("J", {"jobId": "J"})
    assert dispatch.claim_next(worker_id="crashed-worker") is not None
    assert dispatch.pending_count() == 0

    dispatch.publish("J", {"jobId": "J"})

    assert dispatch.pending_count() == 1
    redelivered = dispatch.claim_next(worker_id="w")
    assert redelivered is not None
    assert redelivered.delivery_count == 2
