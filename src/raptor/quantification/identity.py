"""Hierarchical job identifiers.

Root identifiers are opaque hex tokens. A batch member appends its index to
the root, separated by ``SEPARATOR``; clients parse this format, so it is
part of the external contract.
"""

from __future__ import annotations

from uuid import uuid4

SEPARATOR = "-"


def new_root_id() -> str:
    """Return a globally unique root identifier that never contains ``SEPARATOR``."""

    return uuid4().hex


def child_id(parent_id: str, index: int) -> str:
    """Derive the identifier of batch member ``index`` under ``parent_id``."""

    if not parent_id:
        raise ValueError("parent_id must be a non-empty string")
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise ValueError(f"Child index must be a non-negative integer, got {index!r}")
    return f"{parent_id}{SEPARATOR}{index}"


def parent_of(job_id: str) -> str | None:
    """Strip the trailing index segment, or return ``None`` when there is none."""

    prefix, separator, suffix = job_id.rpartition(SEPARATOR)
    if not separator or not prefix:
        return None
    if not suffix.isdecimal() or not suffix.isascii():
        return None
    return prefix


def index_of(job_id: str) -> int | None:
    """Return the trailing batch index of ``job_id``, if it has one."""

    if parent_of(job_id) is None:
        return None
    return int(job_id.rpartition(SEPARATOR)[2])


def is_child_id(job_id: str) -> bool:
    return parent_of(job_id) is not None


def batch_root_of(sequence_job_ids: list[str]) -> str:
    """Resolve the batch root from the first sibling of a dispatched batch."""

    if not sequence_job_ids:
        raise ValueError("Cannot derive a batch root from an empty list of job ids")
    root = parent_of(sequence_job_ids[0])
    if root is None:
        raise ValueError(f"Job id is not a batch member: {sequence_job_ids[0]!r}")
    return root
