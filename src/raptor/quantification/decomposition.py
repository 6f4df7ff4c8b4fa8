"""Request decomposition into per-sequence sub-requests."""

from __future__ import annotations

from typing import Any, Protocol

from raptor.quantification.contracts import InputContractError
from raptor.quantification.models import QuantRequest


class SequenceExtractor(Protocol):
    """Splits a request into independently quantifiable sub-requests, in order."""

    def extract(self, request: QuantRequest) -> list[QuantRequest]:
        """Return one sub-request per sequence."""


class EventTreeSequenceExtractor:
    """Emit one sub-request per event-tree sequence, in document order.

    Expects ``model["eventTrees"]`` to be a list of ``{"name", "sequences"}``
    objects whose sequences are names or ``{"name": ...}`` objects.
    """

    def extract(self, request: QuantRequest) -> list[QuantRequest]:
        event_trees = request.model.get("eventTrees", [])
        if not isinstance(event_trees, list):
            raise InputContractError("model.eventTrees must be an array")

        sub_requests: list[QuantRequest] = []
        for tree_position, tree in enumerate(event_trees):
            if not isinstance(tree, dict):
                raise InputContractError(f"model.eventTrees[{tree_position}] must be an object")
            tree_name = tree.get("name")
            if not isinstance(tree_name, str) or not tree_name.strip():
                raise InputContractError(
                    f"model.eventTrees[{tree_position}].name must be a non-empty string",
                )
            sequences = tree.get("sequences", [])
            if not isinstance(sequences, list):
                raise InputContractError(f"Event tree {tree_name!r} sequences must be an array")
            for sequence_position, sequence in enumerate(sequences):
                sequence_name = _sequence_name(sequence)
                if sequence_name is None:
                    raise InputContractError(
                        f"Event tree {tree_name!r} sequence #{sequence_position} has no name",
                    )
                sub_requests.append(
                    request.for_sequence(event_tree=tree_name, sequence=sequence_name),
                )
        return sub_requests


def _sequence_name(sequence: Any) -> str | None:
    if isinstance(sequence, dict):
        sequence = sequence.get("name")
    if isinstance(sequence, str) and sequence.strip():
        return sequence
    return None
