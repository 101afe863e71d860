"""Artifact exporters for run invariants, scorecards, leaderboards and ensemble rounds."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

import pandas as pd

from horizon_arena.horizons import HORIZONS
from horizon_arena.models.ensemble import ENSEMBLE_ROUND_COLUMNS, EnsembleRound
from horizon_arena.qa.run_invariants import RunInvariants
from horizon_arena.reporting.scorecard import (
    ModelHorizonMetrics,
    build_leaderboard,
    scorecard_frame,
)

if TYPE_CHECKING:
    from horizon_arena.pipeline import RunReport


def _ensure_output_dir(path: str | Path) -> Path:
    output_dir = Path(path)
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def export_run_invariants(
    invariants: RunInvariants,
    output_dir: str | Path,
    *,
    filename: str = "run_invariants.json",
) -> Path:
    base = _ensure_output_dir(output_dir)
    path = base / filename
    with path.open("w", encoding="utf-8") as handle:
        json.dump(invariants.as_dict(), handle, sort_keys=True, indent=2, default=str)
    return path


def export_model_scorecard(
    scorecard: Iterable[ModelHorizonMetrics],
    output_dir: str | Path,
    *,
    filename: str = "model_scorecard.csv",
) -> Path:
    base = _ensure_output_dir(output_dir)
    path = base / filename
    scorecard_frame(scorecard).to_csv(path, index=False)
    return path


def export_ensemble_rounds(
    rounds: Iterable[EnsembleRound],
    output_dir: str | Path,
    *,
    filename: str = "ensemble_rounds.csv",
) -> Path:
    """Write one row per round and horizon; weights are a JSON object column."""

    base = _ensure_output_dir(output_dir)
    path = base / filename
    rows = []
    for item in rounds:
        row = item.as_dict()
        row["weights"] = json.dumps(row["weights"], sort_keys=True)
        rows.append(row)
    pd.DataFrame(rows, columns=list(ENSEMBLE_ROUND_COLUMNS)).to_csv(path, index=False)
    return path


def export_leaderboards(
    scorecard: Iterable[ModelHorizonMetrics],
    output_dir: str | Path,
) -> dict[str, Path]:
    base = _ensure_output_dir(output_dir)
    records = list(scorecard)
    paths: dict[str, Path] = {}
    for horizon in HORIZONS:
        path = base / f"leaderboard_{horizon.value}.csv"
        build_leaderboard(records, horizon).to_csv(path, index=False)
        paths[f"leaderboard_{horizon.value}"] = path
    return paths


def export_run_report(report: "RunReport", output_dir: str | Path) -> dict[str, Path]:
    """Write every run artifact and return their paths keyed by artifact name."""

    paths = {
        "run_invariants": export_run_invariants(report.invariants, output_dir),
        "model_scorecard": export_model_scorecard(report.scorecard, output_dir),
        "ensemble_rounds": export_ensemble_rounds(report.ensemble, output_dir),
    }
    paths.update(export_leaderboards(report.scorecard, output_dir))
    return paths
