"""Artifact store boundary for request inputs and engine outputs."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Protocol


class ArtifactNotFoundError(LookupError):
    """No blob is stored under the requested key."""


class ArtifactStore(Protocol):
    """Blob store keyed by job id (object storage in production)."""

    def put(self, key: str, data: bytes) -> None:
        """Store ``data`` under ``key``, replacing any previous blob."""

    def get(self, key: str) -> bytes:
        """Return the blob stored under ``key``."""

    def exists(self, key: str) -> bool:
        """Whether a blob is stored under ``key``."""


def input_key(job_id: str) -> str:
    return f"input/{job_id}.json"


def output_key(job_id: str, *, attempt: int | None = None) -> str:
    """Key of a job output; worker runs write one key per delivery attempt."""

    if attempt is None:
        return f"output/{job_id}.json"
    return f"output/{job_id}/{attempt}.json"


class FilesystemArtifactStore:
    """Stores blobs as files below ``root_dir`` with atomic replace."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as error:
            raise ArtifactNotFoundError(f"Artifact not found: {key}") from error

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def _path(self, key: str) -> Path:
        parts = Path(key).parts
        if not parts or Path(key).is_absolute() or ".." in parts:
            raise ValueError(f"Invalid artifact key: {key!r}")
        return self.root_dir.joinpath(*parts)
