"""Local deterministic engine for CLI engine integration tests."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from raptor.quantification.contracts import load_json


def main(argv: list[str] | None = None) -> int:
    """Write a synthetic result whose error shrinks as the limit order grows."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--input", required=True)
    parser.add_argument("--output", required=True)
    parser.add_argument("--limit-order", type=int, default=3)
    parser.add_argument("--cut-off", type=float, default=1e-8)
    args = parser.parse_args(argv)

    request = load_json(Path(args.input).read_bytes())
    model = request.get("model", {})
    exact = float(model.get("exactProbability", 0.002))
    limit_order = max(1, args.limit_order)
    approximate = exact * (1 + 0.5**limit_order)
    payload = {
        "probability": approximate,
        "exactProbability": exact,
        "products": 100 * limit_order,
        "stats": {"totalSeconds": 0.01 * limit_order, "reportWriteTimeMs": 1},
        "targetSequence": request.get("targetSequence"),
        "cutOff": args.cut_off,
    }
    Path(args.output).write_text(json.dumps(payload, sort_keys=True), "utf-8")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
