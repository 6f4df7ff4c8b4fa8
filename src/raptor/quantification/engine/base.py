"""Engine interface used by quantification workers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from raptor.quantification.models import QuantRequest, TruncationCriteria


class EngineRunError(RuntimeError):
    """Engine execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class EngineRunRequest:
    """Inputs required to quantify one job once."""

    job_id: str
    request: QuantRequest
    criteria: TruncationCriteria | None = None
    timeout_seconds: int = 3600


@dataclass(slots=True)
class EngineRunResult:
    """Engine outcome of one quantification pass.

    ``probability`` is the estimate under the given truncation; engines that
    can also compute a converged value report it as ``exact_probability``.
    """

    probability: float
    products: int
    exact_probability: float | None = None
    stats: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] = field(default_factory=dict)


class QuantificationEngine(Protocol):
    """Protocol implemented by engine runners."""

    def quantify(self, request: EngineRunRequest) -> EngineRunResult:
        """Run one quantification pass."""
