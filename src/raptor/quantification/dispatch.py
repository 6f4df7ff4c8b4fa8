"""Dispatch channel boundary and the SQLite-backed outbox used locally.

The orchestration core only relies on ``publish(job_id, payload)`` being
at-least-once and independent across jobs. In production this is a message
broker; the outbox below gives the same contract on a single machine and lets
the reference worker claim messages the way a broker consumer would.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from raptor.storage.alembic_runner import upgrade_head
from raptor.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from raptor.storage.sqlmodel_models import DispatchMessage

logger = logging.getLogger(__name__)

MESSAGE_PENDING = "pending"
MESSAGE_CLAIMED = "claimed"
MESSAGE_ACKED = "acked"


class DispatchChannel(Protocol):
    """Carries work items to workers."""

    def publish(self, job_id: str, payload: dict[str, Any]) -> None:
        """Publish one work item; raise on reject or timeout."""


@dataclass(slots=True)
class DeliveredMessage:
    """One claimed work item."""

    job_id: str
    queue: str
    payload: dict[str, Any]
    delivery_count: int


class SqliteDispatchChannel:
    """Outbox table keyed by job id; re-publishing a job id is idempotent."""

    def __init__(
        self,
        db_path: Path,
        *,
        queue: str = "scram",
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.queue = queue
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations (shared with the status store)."""

        upgrade_head(self.db_path)

    def publish(self, job_id: str, payload: dict[str, Any]) -> None:
        now = utc_now()
        payload_json = json.dumps(payload, ensure_ascii=False, sort_keys=True)
        with Session(self.engine) as session:
            row = session.exec(
                select(DispatchMessage).where(DispatchMessage.job_id == job_id),
            ).one_or_none()
            if row is not None:
                row.publish_count += 1
                if row.status == MESSAGE_ACKED:
                    logger.debug("Work item %s already acknowledged; publish ignored", job_id)
                else:
                    row.payload_json = payload_json
                    if row.status == MESSAGE_CLAIMED:
                        # A stale claim (worker gone) becomes deliverable again.
                        logger.info(
                            "Work item %s re-published while claimed by %s; requeued",
                            job_id,
                            row.claimed_by,
                        )
                        row.status = MESSAGE_PENDING
                        row.claimed_by = None
                        row.claimed_at = None
                session.add(row)
                session.commit()
                return
            session.add(
                DispatchMessage(
                    job_id=job_id,
                    queue=self.queue,
                    status=MESSAGE_PENDING,
                    payload_json=payload_json,
                    published_at=now,
                ),
            )
            session.commit()

    def claim_next(self, *, worker_id: str) -> DeliveredMessage | None:
        """Atomically claim the oldest pending message of this queue."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(DispatchMessage)
                    .where(
                        DispatchMessage.queue == self.queue,
                        DispatchMessage.status == MESSAGE_PENDING,
                    )
                    .order_by(
                        col(DispatchMessage.published_at).asc(),
                        col(DispatchMessage.job_id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(DispatchMessage)
                    .where(
                        col(DispatchMessage.job_id) == candidate.job_id,
                        col(DispatchMessage.status) == MESSAGE_PENDING,
                    )
                    .values(
                        status=MESSAGE_CLAIMED,
                        claimed_by=worker_id,
                        claimed_at=to_db_datetime(now),
                        delivery_count=candidate.delivery_count + 1,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return DeliveredMessage(
                    job_id=candidate.job_id,
                    queue=candidate.queue,
                    payload=json.loads(candidate.payload_json),
                    delivery_count=candidate.delivery_count + 1,
                )

    def ack(self, *, job_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(DispatchMessage)
                .where(col(DispatchMessage.job_id) == job_id)
                .values(status=MESSAGE_ACKED, acked_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def release(self, *, job_id: str) -> None:
        """Return a claimed message to the queue for redelivery."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(DispatchMessage)
                .where(
                    col(DispatchMessage.job_id) == job_id,
                    col(DispatchMessage.status) == MESSAGE_CLAIMED,
                )
                .values(status=MESSAGE_PENDING, claimed_by=None, claimed_at=None),
            )
            session.commit()

    def pending_count(self) -> int:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DispatchMessage.job_id).where(
                    DispatchMessage.queue == self.queue,
                    DispatchMessage.status == MESSAGE_PENDING,
                ),
            ).all()
        return len(rows)
