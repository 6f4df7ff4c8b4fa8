from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from raptor.quantification.contracts import InputContractError
from raptor.quantification.engine import (
    CliQuantificationEngine,
    EngineRunError,
    EngineRunRequest,
)
from raptor.quantification.engine.cli_engine import _build_run_args, parse_engine_result
from raptor.quantification.models import QuantRequest, TruncationCriteria

pytestmark = [
    allure.epic("Quantification Engine"),
    allure.feature("Engine Command Execution"),
]

PYTHON = shlex.quote(sys.executable)


def _run_request(*, timeout_seconds: int = 30) -> EngineRunRequest:
    return EngineRunRequest(
        job_id="job-1",
        request=QuantRequest(
            model={"exactProbability": 0.004},
            target_sequence={"eventTree": "LOOP", "sequence": "LOOP-2"},
        ),
        criteria=TruncationCriteria(limit_order=3, cut_off=1e-9),
        timeout_seconds=timeout_seconds,
    )


def test_build_run_args_quotes_paths_and_renders_criteria() -> None:
    run_args, command_head = _build_run_args(
        command_template="scram {input_file} -o {output_file} -l {limit_order} -c {cut_off}",
        input_file=Path("/tmp/work dir/request.json"),
        output_file=Path("/tmp/work dir/result.json"),
        request=_run_request(),
    )

    assert command_head == "scram"
    assert run_args == [
        "scram",
        "/tmp/work dir/request.json",
        "-o",
        "/tmp/work dir/result.json",
        "-l",
        "3",
        "-c",
        "1e-09",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "template is empty"),
        ("scram {input_file}", "must include"),
        ("scram {input_file} {output_file} {model}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(EngineRunError, match=message) as captured:
        _build_run_args(
            command_template=template,
            input_file=Path("in.json"),
            output_file=Path("out.json"),
            request=_run_request(),
        )
    assert captured.value.transient is False


def test_parse_engine_result_validates_types() -> None:
    result = parse_engine_result({"probability": 1e-3, "products": 42, "stats": {"a": 1}})

    assert result.products == 42
    assert result.exact_probability is None
    assert result.stats == {"a": 1}
    with pytest.raises(InputContractError, match="result.products"):
        parse_engine_result({"probability": 1e-3, "products": 4.2})
    with pytest.raises(InputContractError, match="result.probability"):
        parse_engine_result({"probability": True, "products": 1})
    with pytest.raises(InputContractError, match="result.stats"):
        parse_engine_result({"probability": 0.1, "products": 1, "stats": []})


def test_demo_engine_round_trip(demo_engine: str, tmp_path: Path) -> None:
    engine = CliQuantificationEngine(command_template=demo_engine, workdir_root=tmp_path / "work")

    result = engine.quantify(_run_request())

    assert result.exact_probability == pytest.approx(0.004)
    assert result.probability == pytest.approx(0.004 * 1.125)
    assert result.products == 300
    assert result.stats["totalSeconds"] == pytest.approx(0.03)
    assert result.output["targetSequence"] == {"eventTree": "LOOP", "sequence": "LOOP-2"}
    assert result.output["cutOff"] == pytest.approx(1e-9)
    assert list((tmp_path / "work").iterdir()) == []


def test_non_zero_exit_is_a_permanent_failure() -> None:
    engine = CliQuantificationEngine(
        command_template=(
            f"{PYTHON} -c \"import sys; sys.stderr.write('bad model'); sys.exit(3)\" "
            "{input_file} {output_file}"
        ),
    )

    with pytest.raises(EngineRunError, match="exited with code 3: bad model") as captured:
        engine.quantify(_run_request())
    assert captured.value.transient is False


def test_timeout_is_transient() -> None:
    engine = CliQuantificationEngine(
        command_template=(
            f'{PYTHON} -c "import time; time.sleep(10)" {{input_file}} {{output_file}}'
        ),
    )

    with pytest.raises(EngineRunError, match="timed out after 1s") as captured:
        engine.quantify(_run_request(timeout_seconds=1))
    assert captured.value.transient is True


def test_missing_result_file_and_missing_binary_fail() -> None:
    silent = CliQuantificationEngine(
        command_template=f'{PYTHON} -c "pass" {{input_file}} {{output_file}}',
    )
    with pytest.raises(EngineRunError, match="did not write a result file"):
        silent.quantify(_run_request())

    missing = CliQuantificationEngine(
        command_template="raptor-engine-that-does-not-exist {input_file} {output_file}",
    )
    with pytest.raises(EngineRunError, match="Engine command not found"):
        missing.quantify(_run_request())
