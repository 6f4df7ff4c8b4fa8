from __future__ import annotations

from pathlib import Path

import allure
import pytest

from raptor.config import DEFAULT_ENGINE_COMMAND_TEMPLATE, AdaptiveSettings, Settings
from raptor.quantification.models import AdaptiveParameters

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in (
        "RAPTOR_DB_PATH",
        "RAPTOR_ARTIFACT_ROOT",
        "RAPTOR_DISPATCH_CONCURRENCY",
        "RAPTOR_DISPATCH_QUEUE",
        "RAPTOR_ADAPTIVE_TOLERANCE",
        "RAPTOR_ADAPTIVE_MAX_ITERATIONS",
        "RAPTOR_ENGINE_COMMAND_TEMPLATE",
        "RAPTOR_ENGINE_WORKDIR_ROOT",
        "RAPTOR_WORKER_ID",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_for_local_development() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".raptor.db")
    assert settings.artifact_root == Path(".raptor_artifacts")
    assert settings.dispatch.concurrency == 4
    assert settings.dispatch.queue == "scram"
    assert settings.adaptive.to_parameters() == AdaptiveParameters()
    assert settings.worker.engine_command_template == DEFAULT_ENGINE_COMMAND_TEMPLATE
    assert settings.worker.engine_workdir_root is None
    assert settings.worker.worker_id


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RAPTOR_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("RAPTOR_DISPATCH_CONCURRENCY", "1")
    monkeypatch.setenv("RAPTOR_ADAPTIVE_TOLERANCE", "0.001")
    monkeypatch.setenv("RAPTOR_ADAPTIVE_MAX_ITERATIONS", "9")
    monkeypatch.setenv("RAPTOR_WORKER_ID", "node-7")
    monkeypatch.setenv("RAPTOR_ENGINE_WORKDIR_ROOT", str(tmp_path / "runs"))

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.dispatch.concurrency == 1
    assert settings.adaptive.tolerance == 0.001
    assert settings.adaptive.max_iterations == 9
    assert settings.worker.worker_id == "node-7"
    assert settings.worker.engine_workdir_root == tmp_path / "runs"


def test_explicit_paths_win_over_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RAPTOR_DB_PATH", "ignored.db")

    settings = Settings.from_env(db_path=tmp_path / "cli.db", artifact_root=tmp_path / "blobs")

    assert settings.db_path == tmp_path / "cli.db"
    assert settings.artifact_root == tmp_path / "blobs"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("RAPTOR_DISPATCH_CONCURRENCY", "0", "RAPTOR_DISPATCH_CONCURRENCY must be >= 1"),
        ("RAPTOR_DISPATCH_CONCURRENCY", "many", "Invalid integer value"),
        ("RAPTOR_ADAPTIVE_TOLERANCE", "-0.1", "RAPTOR_ADAPTIVE_TOLERANCE must be >= 0"),
        ("RAPTOR_ADAPTIVE_MAX_ITERATIONS", "0", "RAPTOR_ADAPTIVE_MAX_ITERATIONS must be >= 1"),
        ("RAPTOR_DISPATCH_QUEUE", "  ", "RAPTOR_DISPATCH_QUEUE must not be empty"),
    ],
)
def test_invalid_values_name_the_variable(monkeypatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_adaptive_settings_map_to_parameters() -> None:
    parameters = AdaptiveSettings(limit_order=5, widen_factor=2.0).to_parameters()

    assert parameters.limit_order == 5
    assert parameters.widen_factor == 2.0
    assert parameters.initial_criteria.limit_order == 5
