#!/usr/bin/env python3
"""Evaluate a recorded benchmark run and write scorecard/ensemble artifacts."""

# ruff: noqa: E402

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys

import pandas as pd

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from horizon_arena.config import ArenaConfig
from horizon_arena.data.history import RunHistory
from horizon_arena.errors import ContractViolation
from horizon_arena.evaluation.baselines import format_dataset_diagnostics
from horizon_arena.logging_config import configure_logging
from horizon_arena.pipeline import evaluate_run
from horizon_arena.reporting.exporters import export_run_report


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--outcomes",
        required=True,
        help="CSV with columns round,model_id,horizon,probability,label[,failure_type]",
    )
    parser.add_argument(
        "--policy",
        default=None,
        help="optional arena policy YAML (defaults apply when omitted)",
    )
    parser.add_argument(
        "--intended-rounds",
        type=int,
        default=None,
        help="rounds each model was expected to answer (default: rounds observed)",
    )
    parser.add_argument("--output-dir", default="data/reports/arena")
    parser.add_argument("--log-level", default="INFO")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging(getattr(logging, str(args.log_level).upper(), logging.INFO))

    try:
        config = (
            ArenaConfig.from_yaml(args.policy) if args.policy else ArenaConfig.from_policy()
        )
        history = RunHistory.from_frame(
            pd.read_csv(args.outcomes),
            intended_rounds=args.intended_rounds,
        )
        report = evaluate_run(history, config)
        paths = export_run_report(report, args.output_dir)
    except ContractViolation as exc:
        print(f"FAIL: {exc}")
        return 1

    print(format_dataset_diagnostics(report.invariants.diagnostics))
    print("PASS: run evaluated")
    print(
        json.dumps(
            {
                "arena_eligible": list(report.invariants.arena_eligible_models),
                "qualified": list(report.invariants.qualified_models),
                "artifacts": {name: str(path) for name, path in sorted(paths.items())},
            },
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
