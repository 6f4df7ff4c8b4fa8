"""Runtime configuration for the quantification orchestrator."""

from __future__ import annotations

import os
import shlex
import socket
import sys
from dataclasses import dataclass, field
from pathlib import Path

from raptor.quantification.models import AdaptiveParameters

DEFAULT_ENGINE_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m raptor.quantification.engine.demo_engine "
    "--input {input_file} --output {output_file} "
    "--limit-order {limit_order} --cut-off {cut_off}"
)


@dataclass(slots=True)
class DispatchSettings:
    """Producer fan-out and dispatch channel settings."""

    concurrency: int = 4
    queue: str = "scram"


@dataclass(slots=True)
class AdaptiveSettings:
    """Default adaptive truncation policy; requests may override any field."""

    limit_order: int = 3
    cut_off: float = 1e-8
    tolerance: float = 0.05
    max_iterations: int = 4
    widen_factor: float = 10.0
    limit_order_step: int = 1

    def to_parameters(self) -> AdaptiveParameters:
        return AdaptiveParameters(
            limit_order=self.limit_order,
            cut_off=self.cut_off,
            tolerance=self.tolerance,
            max_iterations=self.max_iterations,
            widen_factor=self.widen_factor,
            limit_order_step=self.limit_order_step,
        )


@dataclass(slots=True)
class WorkerSettings:
    """Reference worker settings."""

    worker_id: str = "raptor-worker"
    poll_interval_seconds: float = 2.0
    engine_command_template: str = DEFAULT_ENGINE_COMMAND_TEMPLATE
    engine_timeout_seconds: int = 3_600
    engine_workdir_root: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".raptor.db")
    artifact_root: Path = Path(".raptor_artifacts")
    sqlite_busy_timeout_ms: int = 5_000
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    adaptive: AdaptiveSettings = field(default_factory=AdaptiveSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        artifact_root: Path | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        workdir_root = os.getenv("RAPTOR_ENGINE_WORKDIR_ROOT", "").strip()
        settings = cls(
            db_path=db_path or Path(os.getenv("RAPTOR_DB_PATH", ".raptor.db")),
            artifact_root=artifact_root
            or Path(os.getenv("RAPTOR_ARTIFACT_ROOT", ".raptor_artifacts")),
            sqlite_busy_timeout_ms=_env_int("RAPTOR_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            dispatch=DispatchSettings(
                concurrency=_env_int("RAPTOR_DISPATCH_CONCURRENCY", 4),
                queue=os.getenv("RAPTOR_DISPATCH_QUEUE", "scram").strip(),
            ),
            adaptive=AdaptiveSettings(
                limit_order=_env_int("RAPTOR_ADAPTIVE_LIMIT_ORDER", 3),
                cut_off=_env_float("RAPTOR_ADAPTIVE_CUT_OFF", 1e-8),
                tolerance=_env_float("RAPTOR_ADAPTIVE_TOLERANCE", 0.05),
                max_iterations=_env_int("RAPTOR_ADAPTIVE_MAX_ITERATIONS", 4),
                widen_factor=_env_float("RAPTOR_ADAPTIVE_WIDEN_FACTOR", 10.0),
                limit_order_step=_env_int("RAPTOR_ADAPTIVE_LIMIT_ORDER_STEP", 1),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("RAPTOR_WORKER_ID", "").strip()
                or f"{socket.gethostname()}-{os.getpid()}",
                poll_interval_seconds=_env_float("RAPTOR_WORKER_POLL_INTERVAL_SECONDS", 2.0),
                engine_command_template=os.getenv(
                    "RAPTOR_ENGINE_COMMAND_TEMPLATE",
                    DEFAULT_ENGINE_COMMAND_TEMPLATE,
                ),
                engine_timeout_seconds=_env_int("RAPTOR_ENGINE_TIMEOUT_SECONDS", 3_600),
                engine_workdir_root=Path(workdir_root) if workdir_root else None,
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("RAPTOR_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.dispatch.concurrency < 1:
            raise ValueError("RAPTOR_DISPATCH_CONCURRENCY must be >= 1.")
        if not self.dispatch.queue:
            raise ValueError("RAPTOR_DISPATCH_QUEUE must not be empty.")
        if self.adaptive.limit_order < 1:
            raise ValueError("RAPTOR_ADAPTIVE_LIMIT_ORDER must be >= 1.")
        if self.adaptive.cut_off < 0:
            raise ValueError("RAPTOR_ADAPTIVE_CUT_OFF must be >= 0.")
        if self.adaptive.tolerance < 0:
            raise ValueError("RAPTOR_ADAPTIVE_TOLERANCE must be >= 0.")
        if self.adaptive.max_iterations < 1:
            raise ValueError("RAPTOR_ADAPTIVE_MAX_ITERATIONS must be >= 1.")
        if self.adaptive.widen_factor < 1:
            raise ValueError("RAPTOR_ADAPTIVE_WIDEN_FACTOR must be >= 1.")
        if self.adaptive.limit_order_step < 0:
            raise ValueError("RAPTOR_ADAPTIVE_LIMIT_ORDER_STEP must be >= 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("RAPTOR_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.engine_timeout_seconds <= 0:
            raise ValueError("RAPTOR_ENGINE_TIMEOUT_SECONDS must be > 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error
