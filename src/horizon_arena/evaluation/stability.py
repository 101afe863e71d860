"""Rolling-window stability and regret analysis over per-round log losses."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from horizon_arena.config import StabilityConfig
from horizon_arena.data.history import RunHistory
from horizon_arena.horizons import HORIZONS, Horizon, per_horizon
from horizon_arena.models.qualification import QualificationResult

logger = logging.getLogger(__name__)

STABILITY_FLAGS: tuple[str, ...] = ("regret", "variance")
# window-mean variances below this are rounding noise
VARIANCE_TOLERANCE = 1e-12


@dataclass(frozen=True)
class StabilityScore:
    """Window summary of one model's log losses on one horizon."""

    model_id: str
    horizon: Horizon
    best_window: float
    worst_window: float
    variance: float
    regret: float
    flags: tuple[str, ...] = ()

    @property
    def flagged(self) -> bool:
        return bool(self.flags)

    def as_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "horizon": self.horizon.value,
            "best_window": self.best_window,
            "worst_window": self.worst_window,
            "variance": self.variance,
            "regret": self.regret,
            "flags": list(self.flags),
        }


@dataclass(frozen=True)
class StabilityResult:
    window_size: int
    scores: Mapping[Horizon, Mapping[str, StabilityScore]]

    def score(self, model_id: str, horizon: Horizon) -> Optional[StabilityScore]:
        return self.scores[horizon].get(model_id)

    def flagged_horizons(self, model_id: str) -> tuple[Horizon, ...]:
        return tuple(
            h
            for h in HORIZONS
            if model_id in self.scores[h] and self.scores[h][model_id].flagged
        )

    @property
    def model_ids(self) -> tuple[str, ...]:
        return tuple(sorted({m for h in HORIZONS for m in self.scores[h]}))

    @property
    def eliminated(self) -> tuple[str, ...]:
        """Models flagged on a strict majority of all horizons."""

        return tuple(
            m
            for m in self.model_ids
            if len(self.flagged_horizons(m)) > len(HORIZONS) / 2
        )

    def narrow(self, horizon: Horizon, qualified: Iterable[str]) -> tuple[str, ...]:
        """Drop eliminated models and models flagged on ``horizon``."""

        eliminated = set(self.eliminated)
        return tuple(
            sorted(
                m
                for m in qualified
                if m not in eliminated
                and not (m in self.scores[horizon] and self.scores[horizon][m].flagged)
            )
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "window_size": self.window_size,
            "eliminated": list(self.eliminated),
            "scores": {
                h.value: {m: self.scores[h][m].as_dict() for m in sorted(self.scores[h])}
                for h in HORIZONS
            },
        }


def rolling_window_means(losses: Sequence[float], window_size: int) -> np.ndarray:
    """Means of every contiguous window of ``window_size`` losses."""

    if window_size < 1:
        raise ValueError("window_size must be >= 1")
    series = pd.Series(np.asarray(losses, dtype=float))
    if len(series) < window_size:
        return np.asarray([], dtype=float)
    return series.rolling(window_size).mean().dropna().to_numpy()


def summarize_windows(
    losses: Sequence[float],
    window_size: int,
) -> Optional[tuple[float, float, float]]:
    """Return ``(best, worst, variance)`` of window means, or None if too short."""

    means = rolling_window_means(losses, window_size)
    if means.size == 0:
        return None
    return float(means.min()), float(means.max()), float(np.var(means))


def score_cohort(
    horizon: Horizon,
    losses_by_model: Mapping[str, Sequence[float]],
    config: StabilityConfig | None = None,
) -> dict[str, StabilityScore]:
    """Score one horizon's cohort; regret and variance are judged against it."""

    config = config or StabilityConfig()
    summaries: dict[str, tuple[float, float, float]] = {}
    for model_id in sorted(losses_by_model):
        summary = summarize_windows(losses_by_model[model_id], config.window_size)
        if summary is not None:
            summaries[model_id] = summary
    if not summaries:
        return {}

    median_worst = float(np.median([worst for _, worst, _ in summaries.values()]))
    median_variance = float(np.median([var for _, _, var in summaries.values()]))

    scores: dict[str, StabilityScore] = {}
    for model_id, (best, worst, variance) in summaries.items():
        regret = worst / median_worst if median_worst > 0 else 1.0
        flags: list[str] = []
        if regret > config.max_regret:
            flags.append("regret")
        if (
            variance > VARIANCE_TOLERANCE
            and variance > config.stability_multiplier * median_variance
        ):
            flags.append("variance")
        scores[model_id] = StabilityScore(
            model_id=model_id,
            horizon=horizon,
            best_window=best,
            worst_window=worst,
            variance=variance,
            regret=regret,
            flags=tuple(flags),
        )
    return scores


def evaluate_stability(
    history: RunHistory,
    qualification: QualificationResult,
    config: StabilityConfig | None = None,
) -> StabilityResult:
    """Score each horizon's skill-qualified cohort over its log-loss sequences."""

    config = config or StabilityConfig()
    views = history.views()
    result = StabilityResult(
        window_size=config.window_size,
        scores=per_horizon(
            lambda horizon: score_cohort(
                horizon,
                {
                    model_id: views[model_id].log_losses(horizon)
                    for model_id in qualification.qualified(horizon)
                },
                config,
            )
        ),
    )

    for horizon in HORIZONS:
        for model_id, score in sorted(result.scores[horizon].items()):
            if score.flagged:
                logger.warning(
                    "model %s unstable on %s (%s): regret=%.3f variance=%.5f",
                    model_id,
                    horizon.value,
                    ",".join(score.flags),
                    score.regret,
                    score.variance,
                )
    for model_id in result.eliminated:
        logger.warning(
            "model %s eliminated: unstable on %d of %d horizons",
            model_id,
            len(result.flagged_horizons(model_id)),
            len(HORIZONS),
        )
    return result
