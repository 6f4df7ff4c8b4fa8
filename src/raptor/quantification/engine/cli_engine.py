"""Subprocess-based runner for a command-line quantification engine."""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Any

from raptor.quantification.contracts import (
    InputContractError,
    dump_json,
    load_json,
    quant_request_to_dict,
)
from raptor.quantification.engine.base import EngineRunError, EngineRunRequest, EngineRunResult

TIMEOUT_EXIT_CODE = 124


class CliQuantificationEngine:
    """Execute an engine command template once per quantification pass.

    The template may reference ``{input_file}``, ``{output_file}``,
    ``{limit_order}`` and ``{cut_off}``. The engine must write a JSON object
    with ``probability`` and ``products`` (and optionally
    ``exactProbability`` and ``stats``) to ``{output_file}``.
    """

    def __init__(self, *, command_template: str, workdir_root: Path | None = None) -> None:
        self.command_template = command_template
        self.workdir_root = workdir_root

    def quantify(self, request: EngineRunRequest) -> EngineRunResult:
        if self.workdir_root is not None:
            self.workdir_root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(
            prefix=f"raptor-{request.job_id}-",
            dir=self.workdir_root,
        ) as workdir:
            input_file = Path(workdir) / "request.json"
            output_file = Path(workdir) / "result.json"
            stderr_file = Path(workdir) / "engine_stderr.log"
            input_file.write_bytes(dump_json(quant_request_to_dict(request.request)))

            run_args, command_head = _build_run_args(
                command_template=self.command_template,
                input_file=input_file,
                output_file=output_file,
                request=request,
            )
            try:
                with stderr_file.open("w", encoding="utf-8") as stderr_handle:
                    exit_code = _run_subprocess(
                        run_args=run_args,
                        timeout_seconds=request.timeout_seconds,
                        stderr_handle=stderr_handle,
                    )
            except FileNotFoundError as error:
                raise EngineRunError(
                    f"Engine command not found: {command_head}",
                    transient=False,
                ) from error
            except OSError as error:
                raise EngineRunError(f"Engine failed to start: {error}", transient=True) from error

            if exit_code == TIMEOUT_EXIT_CODE:
                raise EngineRunError(
                    f"Engine timed out after {request.timeout_seconds}s",
                    transient=True,
                )
            if exit_code != 0:
                stderr_tail = stderr_file.read_text("utf-8", errors="replace")[-1200:].strip()
                raise EngineRunError(
                    f"Engine exited with code {exit_code}: {stderr_tail or '<no stderr>'}",
                    transient=False,
                )
            if not output_file.is_file():
                raise EngineRunError("Engine did not write a result file.", transient=False)
            try:
                return parse_engine_result(load_json(output_file.read_bytes()))
            except InputContractError as error:
                raise EngineRunError(f"Invalid engine result: {error}", transient=False) from error


def parse_engine_result(raw: dict[str, Any]) -> EngineRunResult:
    """Validate the JSON document written by the engine."""

    probability = raw.get("probability")
    products = raw.get("products")
    exact_probability = raw.get("exactProbability")
    stats = raw.get("stats", {})
    if isinstance(probability, bool) or not isinstance(probability, int | float):
        raise InputContractError("result.probability must be a number")
    if isinstance(products, bool) or not isinstance(products, int):
        raise InputContractError("result.products must be an integer")
    if exact_probability is not None and (
        isinstance(exact_probability, bool) or not isinstance(exact_probability, int | float)
    ):
        raise InputContractError("result.exactProbability must be a number when provided")
    if not isinstance(stats, dict):
        raise InputContractError("result.stats must be an object")
    return EngineRunResult(
        probability=float(probability),
        products=products,
        exact_probability=float(exact_probability) if exact_probability is not None else None,
        stats=stats,
        output=raw,
    )


def _build_run_args(
    *,
    command_template: str,
    input_file: Path,
    output_file: Path,
    request: EngineRunRequest,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise EngineRunError("Engine command template is empty.", transient=False)
    if "{input_file}" not in stripped or "{output_file}" not in stripped:
        raise EngineRunError(
            "Engine command template must include {input_file} and {output_file}.",
            transient=False,
        )
    criteria = request.criteria
    try:
        rendered = stripped.format(
            input_file=shlex.quote(str(input_file)),
            output_file=shlex.quote(str(output_file)),
            limit_order=criteria.limit_order if criteria is not None else "",
            cut_off=repr(criteria.cut_off) if criteria is not None else "",
        )
    except KeyError as error:
        raise EngineRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise EngineRunError("Engine command template rendered empty command.", transient=False)
    return argv, argv[0]


def _run_subprocess(*, run_args: list[str], timeout_seconds: int, stderr_handle) -> int:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=os.environ.copy(),
        stdout=subprocess.DEVNULL,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode
        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE
        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
