"""JSON contracts for quantification requests, work items and engine stats."""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Any

from raptor.quantification.models import AdaptiveParameters, QuantRequest, WorkItem

CONTRACT_VERSION = 1

TIMING_STATS_FIELDS = ("startedAt", "endedAt", "idleTime", "executionTime", "analysisSeconds")
RESULT_STATS_FIELDS = ("probability", "products")
ADAPTIVE_STATS_FIELDS = (
    "originalProducts",
    "exactProbability",
    "approximateProbability",
    "relativeError",
)
INTERNAL_STATS_FIELDS = ("totalSeconds", "reportWriteTimeMs")

_ADAPTIVE_PARAMETER_KEYS = {
    "limitOrder": ("limit_order", int),
    "cutOff": ("cut_off", float),
    "tolerance": ("tolerance", float),
    "maxIterations": ("max_iterations", int),
    "widenFactor": ("widen_factor", float),
    "limitOrderStep": ("limit_order_step", int),
}


class InputContractError(ValueError):
    """Payload does not match the expected contract."""


def dump_json(payload: dict[str, Any]) -> bytes:
    """Serialize payload using deterministic formatting."""

    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True).encode("utf-8")


def load_json(data: bytes | str) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as error:
        raise InputContractError(f"Invalid JSON document: {error}") from error
    if not isinstance(payload, dict):
        raise InputContractError("Expected a JSON object at the top level")
    return payload


def quant_request_to_dict(request: QuantRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {"model": request.model, "settings": request.settings}
    if request.target_sequence is not None:
        payload["targetSequence"] = request.target_sequence
    if request.adaptive is not None:
        payload["adaptive"] = request.adaptive
    return payload


def parse_quant_request(raw: dict[str, Any]) -> QuantRequest:
    """Validate a raw request body."""

    model = raw.get("model")
    settings = raw.get("settings", {})
    target_sequence = raw.get("targetSequence")
    adaptive = raw.get("adaptive")
    if not isinstance(model, dict):
        raise InputContractError("request.model must be an object")
    if not isinstance(settings, dict):
        raise InputContractError("request.settings must be an object")
    if target_sequence is not None:
        if not isinstance(target_sequence, dict) or not all(
            isinstance(target_sequence.get(key), str) for key in ("eventTree", "sequence")
        ):
            raise InputContractError(
                "request.targetSequence must contain string eventTree and sequence",
            )
    if adaptive is not None and not isinstance(adaptive, dict):
        raise InputContractError("request.adaptive must be an object when provided")
    return QuantRequest(
        model=model,
        settings=settings,
        target_sequence=target_sequence,
        adaptive=adaptive,
    )


def parse_adaptive_parameters(
    raw: dict[str, Any] | None,
    *,
    defaults: AdaptiveParameters,
) -> AdaptiveParameters:
    """Overlay request-level adaptive options on configured defaults."""

    if not raw:
        return defaults
    overrides: dict[str, Any] = {}
    for key, (attribute, kind) in _ADAPTIVE_PARAMETER_KEYS.items():
        if key not in raw:
            continue
        value = raw[key]
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise InputContractError(f"adaptive.{key} must be a number")
        if kind is int and int(value) != value:
            raise InputContractError(f"adaptive.{key} must be an integer")
        overrides[attribute] = kind(value)
    parameters = replace(defaults, **overrides)
    validate_adaptive_parameters(parameters)
    return parameters


def validate_adaptive_parameters(parameters: AdaptiveParameters) -> None:
    if parameters.limit_order < 1:
        raise InputContractError("adaptive.limitOrder must be >= 1")
    if parameters.cut_off < 0:
        raise InputContractError("adaptive.cutOff must be >= 0")
    if parameters.tolerance < 0:
        raise InputContractError("adaptive.tolerance must be >= 0")
    if parameters.max_iterations < 1:
        raise InputContractError("adaptive.maxIterations must be >= 1")
    if parameters.widen_factor < 1:
        raise InputContractError("adaptive.widenFactor must be >= 1")
    if parameters.limit_order_step < 0:
        raise InputContractError("adaptive.limitOrderStep must be >= 0")


def work_item_to_dict(item: WorkItem) -> dict[str, Any]:
    return {
        "contractVersion": CONTRACT_VERSION,
        "jobId": item.job_id,
        "inputKey": item.input_key,
        "adaptive": item.adaptive,
        "adaptiveParameters": (
            item.adaptive_parameters.to_dict() if item.adaptive_parameters is not None else None
        ),
        "parentJobId": item.parent_job_id,
        "sequenceIndex": item.sequence_index,
    }


def parse_work_item(raw: dict[str, Any], *, defaults: AdaptiveParameters) -> WorkItem:
    """Deserialize and validate a dispatched work item."""

    job_id = raw.get("jobId")
    input_key = raw.get("inputKey")
    adaptive = raw.get("adaptive", False)
    if not isinstance(job_id, str) or not job_id:
        raise InputContractError("workItem.jobId must be a non-empty string")
    if not isinstance(input_key, str) or not input_key:
        raise InputContractError("workItem.inputKey must be a non-empty string")
    if not isinstance(adaptive, bool):
        raise InputContractError("workItem.adaptive must be a boolean")
    parameters_raw = raw.get("adaptiveParameters")
    if parameters_raw is not None and not isinstance(parameters_raw, dict):
        raise InputContractError("workItem.adaptiveParameters must be an object")
    sequence_index = raw.get("sequenceIndex")
    if sequence_index is not None and not isinstance(sequence_index, int):
        raise InputContractError("workItem.sequenceIndex must be an integer")
    return WorkItem(
        job_id=job_id,
        input_key=input_key,
        adaptive=adaptive,
        adaptive_parameters=(
            parse_adaptive_parameters(parameters_raw, defaults=defaults) if adaptive else None
        ),
        parent_job_id=raw.get("parentJobId"),
        sequence_index=sequence_index,
    )


def parse_job_stats(raw: dict[str, Any]) -> dict[str, Any]:
    """Validate the shape of engine-reported stats.

    Known numeric fields must be numbers. Adaptive fields come as a group:
    when any is present all four must be.
    """

    for key in (*TIMING_STATS_FIELDS, *RESULT_STATS_FIELDS, *ADAPTIVE_STATS_FIELDS):
        value = raw.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise InputContractError(f"stats.{key} must be a number")
    present = [key for key in ADAPTIVE_STATS_FIELDS if raw.get(key) is not None]
    if present and len(present) != len(ADAPTIVE_STATS_FIELDS):
        missing = [key for key in ADAPTIVE_STATS_FIELDS if key not in present]
        raise InputContractError(
            f"Adaptive stats are incomplete, missing: {', '.join(missing)}",
        )
    return dict(raw)
