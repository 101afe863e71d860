"""One-call orchestration from recorded history to a complete run report."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import pandas as pd

from horizon_arena.config import ArenaConfig
from horizon_arena.data.history import RoundOutcome, RunHistory
from horizon_arena.data.rounds import (
    DEFAULT_TIMEOUT_SECONDS,
    ModelInvoker,
    RoundContext,
    collect_round,
)
from horizon_arena.horizons import HORIZONS, Horizon
from horizon_arena.models.ensemble import (
    EnsemblePerformance,
    EnsembleRound,
    run_online_ensemble,
    score_ensemble,
)
from horizon_arena.qa.run_invariants import RunInvariants, compute_run_invariants
from horizon_arena.reporting.scorecard import (
    ModelHorizonMetrics,
    build_model_scorecard,
    scorecard_frame,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunReport:
    invariants: RunInvariants
    scorecard: list[ModelHorizonMetrics]
    ensemble: list[EnsembleRound]
    ensemble_performance: Mapping[Horizon, EnsemblePerformance]

    def scorecard_frame(self) -> pd.DataFrame:
        return scorecard_frame(self.scorecard)

    def as_dict(self) -> dict[str, Any]:
        return {
            "invariants": self.invariants.as_dict(),
            "ensemble_performance": {
                h.value: self.ensemble_performance[h].as_dict() for h in HORIZONS
            },
        }


def run_round(
    history: RunHistory,
    invokers: Mapping[str, ModelInvoker],
    context: RoundContext,
    labels: Mapping[Any, Optional[bool]] | None = None,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> list[RoundOutcome]:
    """Invoke every model for one round and record the results."""

    results = collect_round(invokers, context, timeout_seconds=timeout_seconds)
    return history.record_round(context.round_index, results, labels)


def evaluate_run(
    history: RunHistory,
    config: ArenaConfig | None = None,
) -> RunReport:
    """Compute invariants, replay the online ensemble and build the scorecard."""

    config = config or ArenaConfig()
    logger.info(
        "evaluating run: %d models, %d rounds (%d intended)",
        len(history.model_ids),
        len(history.round_indices),
        history.intended_rounds,
    )

    invariants = compute_run_invariants(history, config)

    ensemble = run_online_ensemble(
        history, invariants.qualified_by_horizon, config.ensemble
    )
    performance = score_ensemble(
        ensemble, window_size=config.ensemble.rolling_window_size
    )
    for horizon in HORIZONS:
        item = performance[horizon]
        logger.info(
            "ensemble %s: scored=%d unscoreable=%d mean_log_loss=%s",
            horizon.value,
            item.n_scored,
            item.n_unscoreable,
            "n/a" if item.mean_log_loss is None else f"{item.mean_log_loss:.4f}",
        )

    scorecard = build_model_scorecard(history, invariants)
    logger.info("scorecard built: %d model/horizon rows", len(scorecard))
    return RunReport(
        invariants=invariants,
        scorecard=scorecard,
        ensemble=ensemble,
        ensemble_performance=performance,
    )
