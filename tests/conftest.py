"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from raptor.quantification.artifacts import FilesystemArtifactStore
from raptor.quantification.dispatch import SqliteDispatchChannel
from raptor.quantification.models import QuantRequest
from raptor.quantification.repository import QuantJobRepository

SRC_DIR = Path(__file__).resolve().parents[1] / "src"

DEMO_ENGINE_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m raptor.quantification.engine.demo_engine "
    "--input {input_file} --output {output_file} "
    "--limit-order {limit_order} --cut-off {cut_off}"
)


def make_request(*trees: tuple[str, list[str]], exact: float = 0.002) -> QuantRequest:
    return QuantRequest(
        model={
            "name": "demo-plant",
            "exactProbability": exact,
            "eventTrees": [
                {"name": name, "sequences": [{"name": sequence} for sequence in sequences]}
                for name, sequences in trees
            ],
        },
        settings={"mocus": True},
    )


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "raptor.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[QuantJobRepository]:
    repo = QuantJobRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def dispatch(db_path: Path, repository: QuantJobRepository) -> Iterator[SqliteDispatchChannel]:
    channel = SqliteDispatchChannel(db_path)
    yield channel
    channel.close()


@pytest.fixture()
def artifacts(tmp_path: Path) -> FilesystemArtifactStore:
    return FilesystemArtifactStore(tmp_path / "artifacts")


@pytest.fixture()
def three_sequence_request() -> QuantRequest:
    return make_request(("LOOP", ["LOOP-1", "LOOP-2"]), ("SGTR", ["SGTR-1"]))


@pytest.fixture()
def demo_engine(monkeypatch) -> str:
    """Make the in-tree package importable by engine subprocesses."""

    existing = os.environ.get("PYTHONPATH")
    pythonpath = str(SRC_DIR) if not existing else os.pathsep.join([str(SRC_DIR), existing])
    monkeypatch.setenv("PYTHONPATH", pythonpath)
    return DEMO_ENGINE_COMMAND_TEMPLATE


@pytest.fixture()
def build_request():
    return make_request
