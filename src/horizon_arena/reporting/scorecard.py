"""Per-model, per-horizon metric tables and horizon leaderboards."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

import pandas as pd

from horizon_arena.data.history import ModelHistory, RunHistory
from horizon_arena.evaluation.metrics import (
    calibration_slope,
    expected_calibration_error,
    finite_or_none,
    mean_brier,
    mean_log_loss,
    precision,
    win_rate,
)
from horizon_arena.horizons import HORIZONS, Horizon, parse_horizon
from horizon_arena.qa.run_invariants import RunInvariants

LEADERBOARD_MIN_ECE_SAMPLES = 20

SCORECARD_COLUMNS: tuple[str, ...] = (
    "model_id",
    "horizon",
    "n_scored",
    "mean_log_loss",
    "mean_brier",
    "calibration_slope",
    "ece",
    "win_rate",
    "precision",
    "is_valid",
    "validity_violations",
    "is_qualified",
    "stability_regret",
    "stability_variance",
    "stability_flagged",
    "arena_eligible",
)

LEADERBOARD_COLUMNS: tuple[str, ...] = (
    "rank",
    "model_id",
    "n_scored",
    "mean_log_loss",
    "mean_brier",
    "win_rate",
    "ece",
    "is_qualified",
)


@dataclass(frozen=True)
class ModelHorizonMetrics:
    model_id: str
    horizon: Horizon
    n_scored: int
    mean_log_loss: Optional[float]
    mean_brier: Optional[float]
    calibration_slope: Optional[float]
    ece: Optional[float]
    win_rate: Optional[float]
    precision: Optional[float]
    is_valid: bool
    validity_violations: tuple[str, ...]
    is_qualified: bool
    stability_regret: Optional[float]
    stability_variance: Optional[float]
    stability_flagged: bool
    arena_eligible: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "horizon": self.horizon.value,
            "n_scored": self.n_scored,
            "mean_log_loss": self.mean_log_loss,
            "mean_brier": self.mean_brier,
            "calibration_slope": self.calibration_slope,
            "ece": self.ece,
            "win_rate": self.win_rate,
            "precision": self.precision,
            "is_valid": self.is_valid,
            "validity_violations": ",".join(self.validity_violations),
            "is_qualified": self.is_qualified,
            "stability_regret": self.stability_regret,
            "stability_variance": self.stability_variance,
            "stability_flagged": self.stability_flagged,
            "arena_eligible": self.arena_eligible,
        }


def compute_model_horizon_metrics(
    view: ModelHistory,
    horizon: Horizon,
    invariants: RunInvariants,
) -> ModelHorizonMetrics:
    preds = view.predictions(horizon)
    labels = view.labels(horizon)
    verdict = invariants.validity[view.model_id].horizons[horizon]
    stability = invariants.stability.score(view.model_id, horizon)

    return ModelHorizonMetrics(
        model_id=view.model_id,
        horizon=horizon,
        n_scored=int(preds.size),
        mean_log_loss=finite_or_none(mean_log_loss(preds, labels)),
        mean_brier=finite_or_none(mean_brier(preds, labels)),
        calibration_slope=finite_or_none(calibration_slope(preds, labels)),
        ece=finite_or_none(expected_calibration_error(preds, labels)),
        win_rate=finite_or_none(win_rate(preds, labels)),
        precision=finite_or_none(precision(preds, labels)),
        is_valid=verdict.is_valid,
        validity_violations=verdict.violations,
        is_qualified=invariants.is_qualified(view.model_id, horizon),
        stability_regret=None if stability is None else stability.regret,
        stability_variance=None if stability is None else stability.variance,
        stability_flagged=False if stability is None else stability.flagged,
        arena_eligible=view.model_id in invariants.arena_eligible_by_horizon[horizon],
    )


def build_model_scorecard(
    history: RunHistory,
    invariants: RunInvariants,
) -> list[ModelHorizonMetrics]:
    """One metrics record per evaluated model and horizon, sorted by model then horizon."""

    views = history.views()
    return [
        compute_model_horizon_metrics(views[model_id], horizon, invariants)
        for model_id in invariants.evaluated_models
        for horizon in HORIZONS
    ]


def scorecard_frame(scorecard: Iterable[ModelHorizonMetrics]) -> pd.DataFrame:
    rows = [item.as_dict() for item in scorecard]
    return pd.DataFrame(rows, columns=list(SCORECARD_COLUMNS))


def build_leaderboard(
    scorecard: Iterable[ModelHorizonMetrics],
    horizon: Horizon | str,
) -> pd.DataFrame:
    """Rank models on one horizon by mean log loss; missing values rank last.

    ECE is only reported once a model has at least
    ``LEADERBOARD_MIN_ECE_SAMPLES`` scored rounds.
    """

    target = parse_horizon(horizon)
    rows = [
        {
            "model_id": item.model_id,
            "n_scored": item.n_scored,
            "mean_log_loss": item.mean_log_loss,
            "mean_brier": item.mean_brier,
            "win_rate": item.win_rate,
            "ece": item.ece if item.n_scored >= LEADERBOARD_MIN_ECE_SAMPLES else None,
            "is_qualified": item.is_qualified,
        }
        for item in scorecard
        if item.horizon == target
    ]
    board = pd.DataFrame(rows, columns=[c for c in LEADERBOARD_COLUMNS if c != "rank"])
    if board.empty:
        return pd.DataFrame(columns=list(LEADERBOARD_COLUMNS))

    board["mean_log_loss"] = pd.to_numeric(board["mean_log_loss"], errors="coerce")
    board = board.sort_values(
        ["mean_log_loss", "model_id"],
        ascending=[True, True],
        na_position="last",
    ).reset_index(drop=True)
    board.insert(0, "rank", range(1, len(board) + 1))
    return board
