"""Online ensemble of qualified models with exponentially decayed loss weights.

For each round and horizon, every member with trailing scored history gets a
raw weight ``exp(-alpha * rolling_mean_log_loss) * min(1, n / window)``, where
the rolling mean covers at most the last ``window`` scored rounds strictly
before the current round. Weights are normalized over members that produced a
valid prediction this round. Rounds with fewer than ``min_models`` valid member
predictions are not scoreable and fall back to 0.5.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence

import numpy as np

from horizon_arena.config import EnsembleConfig
from horizon_arena.data.history import RunHistory
from horizon_arena.evaluation.metrics import finite_or_none, log_loss
from horizon_arena.evaluation.stability import rolling_window_means
from horizon_arena.horizons import HORIZONS, Horizon, per_horizon

logger = logging.getLogger(__name__)

UNSCOREABLE_PROBABILITY = 0.5

ENSEMBLE_ROUND_COLUMNS: tuple[str, ...] = (
    "round",
    "horizon",
    "probability",
    "is_scoreable",
    "label",
    "log_loss",
    "n_contributors",
    "weight_entropy",
    "weights",
)


@dataclass(frozen=True)
class EnsembleRound:
    """Combined estimate for one round and horizon."""

    round_index: int
    horizon: Horizon
    probability: float
    is_scoreable: bool
    contributing_models: tuple[str, ...] = ()
    weights: Mapping[str, float] = field(default_factory=dict)
    weight_entropy: Optional[float] = None
    label: Optional[bool] = None

    @property
    def loss(self) -> Optional[float]:
        if not self.is_scoreable or self.label is None:
            return None
        return float(log_loss(self.probability, self.label))

    def as_dict(self) -> dict[str, Any]:
        return {
            "round": self.round_index,
            "horizon": self.horizon.value,
            "probability": self.probability,
            "is_scoreable": self.is_scoreable,
            "label": self.label,
            "log_loss": self.loss,
            "n_contributors": len(self.contributing_models),
            "weight_entropy": self.weight_entropy,
            "weights": {m: self.weights[m] for m in self.contributing_models},
        }


@dataclass(frozen=True)
class EnsemblePerformance:
    horizon: Horizon
    n_rounds: int
    n_scored: int
    n_unscoreable: int
    mean_log_loss: Optional[float]
    best_window: Optional[float]
    loss_std: Optional[float]

    def as_dict(self) -> dict[str, Any]:
        return {
            "horizon": self.horizon.value,
            "n_rounds": self.n_rounds,
            "n_scored": self.n_scored,
            "n_unscoreable": self.n_unscoreable,
            "mean_log_loss": self.mean_log_loss,
            "best_window": self.best_window,
            "loss_std": self.loss_std,
        }


def raw_weight(
    trailing_losses: Sequence[float],
    *,
    alpha: float,
    window_size: int,
) -> float:
    """Unnormalized weight from a member's scored losses before this round."""

    losses = np.asarray(trailing_losses, dtype=float)
    if losses.size == 0:
        return 0.0
    rolling = float(np.mean(losses[-window_size:]))
    return math.exp(-alpha * rolling) * min(1.0, losses.size / window_size)


def normalize_weights(raw: Mapping[str, float]) -> dict[str, float]:
    """Normalize the positive, finite raw weights to sum to 1."""

    usable = {m: w for m, w in raw.items() if math.isfinite(w) and w > 0.0}
    total = sum(usable.values())
    if total <= 0.0:
        return {}
    return {m: usable[m] / total for m in sorted(usable)}


def weight_entropy(weights: Mapping[str, float]) -> Optional[float]:
    """Shannon entropy (nats) of a normalized weight set; None when empty."""

    values = np.asarray([w for w in weights.values() if w > 0.0], dtype=float)
    if values.size == 0:
        return None
    return float(-np.sum(values * np.log(values)))


def combine_round(
    round_index: int,
    horizon: Horizon,
    predictions: Mapping[str, Optional[float]],
    trailing_losses: Mapping[str, Sequence[float]],
    config: EnsembleConfig | None = None,
    *,
    label: Optional[bool] = None,
) -> EnsembleRound:
    """Blend the members' valid predictions for one round and horizon."""

    config = config or EnsembleConfig()
    valid = {
        model_id: float(p)
        for model_id, p in sorted(predictions.items())
        if finite_or_none(p) is not None
    }
    if len(valid) < config.min_models:
        return EnsembleRound(
            round_index=round_index,
            horizon=horizon,
            probability=UNSCOREABLE_PROBABILITY,
            is_scoreable=False,
            label=label,
        )

    raw = {
        model_id: raw_weight(
            trailing_losses.get(model_id, ()),
            alpha=config.alpha,
            window_size=config.rolling_window_size,
        )
        for model_id in valid
    }
    weights = normalize_weights(raw)
    if not weights:
        weights = {model_id: 1.0 / len(valid) for model_id in valid}

    probability = sum(weight * valid[model_id] for model_id, weight in weights.items())
    return EnsembleRound(
        round_index=round_index,
        horizon=horizon,
        probability=min(1.0, max(0.0, probability)),
        is_scoreable=True,
        contributing_models=tuple(sorted(weights)),
        weights=weights,
        weight_entropy=weight_entropy(weights),
        label=label,
    )


def run_online_ensemble(
    history: RunHistory,
    members: Mapping[Horizon, Iterable[str]],
    config: EnsembleConfig | None = None,
) -> list[EnsembleRound]:
    """Replay the run round by round, blending each horizon's member set.

    A member's weight at round ``r`` only uses its scored outcomes from rounds
    before ``r``.
    """

    config = config or EnsembleConfig()
    views = history.views()
    rounds: list[EnsembleRound] = []

    for horizon in HORIZONS:
        member_ids = tuple(sorted(m for m in members.get(horizon, ()) if m in views))
        trailing: dict[str, list[float]] = {m: [] for m in member_ids}
        for round_index in history.round_indices:
            predictions: dict[str, Optional[float]] = {}
            for model_id in member_ids:
                outcome = views[model_id].outcome_at(horizon, round_index)
                if outcome is not None and not outcome.failed:
                    predictions[model_id] = outcome.probability

            result = combine_round(
                round_index,
                horizon,
                predictions,
                trailing,
                config,
                label=history.label_for(round_index, horizon),
            )
            logger.debug(
                "ensemble round %d %s: p=%.4f scoreable=%s weights=%s",
                round_index,
                horizon.value,
                result.probability,
                result.is_scoreable,
                dict(result.weights),
            )
            rounds.append(result)

            for model_id in member_ids:
                outcome = views[model_id].outcome_at(horizon, round_index)
                if outcome is not None and outcome.is_scored:
                    trailing[model_id].append(float(outcome.loss))

    rounds.sort(key=lambda item: (item.round_index, HORIZONS.index(item.horizon)))
    scoreable = sum(1 for item in rounds if item.is_scoreable)
    logger.info(
        "online ensemble: %d of %d round/horizon cells scoreable",
        scoreable,
        len(rounds),
    )
    return rounds


def score_ensemble(
    rounds: Iterable[EnsembleRound],
    *,
    window_size: int = EnsembleConfig.rolling_window_size,
) -> dict[Horizon, EnsemblePerformance]:
    """Aggregate ensemble losses per horizon over scoreable, resolved rounds."""

    ordered = sorted(rounds, key=lambda item: item.round_index)

    def _for_horizon(horizon: Horizon) -> EnsemblePerformance:
        cells = [item for item in ordered if item.horizon == horizon]
        losses = np.asarray(
            [item.loss for item in cells if item.loss is not None], dtype=float
        )
        windows = rolling_window_means(losses, window_size)
        return EnsemblePerformance(
            horizon=horizon,
            n_rounds=len(cells),
            n_scored=int(losses.size),
            n_unscoreable=sum(1 for item in cells if not item.is_scoreable),
            mean_log_loss=float(losses.mean()) if losses.size else None,
            best_window=float(windows.min()) if windows.size else None,
            loss_std=float(losses.std()) if losses.size else None,
        )

    return per_horizon(_for_horizon)
