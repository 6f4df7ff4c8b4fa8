"""Quantification engine boundary."""

from raptor.quantification.engine.base import (
    EngineRunError,
    EngineRunRequest,
    EngineRunResult,
    QuantificationEngine,
)
from raptor.quantification.engine.cli_engine import CliQuantificationEngine

__all__ = [
    "CliQuantificationEngine",
    "EngineRunError",
    "EngineRunRequest",
    "EngineRunResult",
    "QuantificationEngine",
]
