"""Dataset diagnostics and reference log-loss baselines per horizon."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import numpy as np

from horizon_arena.data.history import RunHistory
from horizon_arena.evaluation.metrics import EPSILON, finite_or_none, mean_log_loss
from horizon_arena.horizons import HORIZONS, Horizon, per_horizon

RANDOM_BASELINE_LL = math.log(2.0)

BASELINE_VARIANTS: tuple[str, ...] = (
    "random",
    "always_true",
    "always_false",
    "prevalence_best",
)


@dataclass(frozen=True)
class HorizonDiagnostics:
    """Label distribution and constant-predictor baselines for one horizon."""

    horizon: Horizon
    n_resolved: int
    n_true: int
    n_false: int
    p_true: Optional[float]
    random: float
    always_true: Optional[float]
    always_false: Optional[float]
    prevalence_best: Optional[float]

    @property
    def minority_count(self) -> int:
        return min(self.n_true, self.n_false)

    def baseline(self, variant: str) -> Optional[float]:
        if variant not in BASELINE_VARIANTS:
            raise KeyError(variant)
        return getattr(self, variant)

    def as_dict(self) -> dict[str, Any]:
        return {
            "horizon": self.horizon.value,
            "n_resolved": self.n_resolved,
            "n_true": self.n_true,
            "n_false": self.n_false,
            "p_true": self.p_true,
            "baselines": {variant: self.baseline(variant) for variant in BASELINE_VARIANTS},
        }


@dataclass(frozen=True)
class DatasetDiagnostics:
    horizons: Mapping[Horizon, HorizonDiagnostics]

    def __getitem__(self, horizon: Horizon) -> HorizonDiagnostics:
        return self.horizons[horizon]

    def as_dict(self) -> dict[str, Any]:
        return {
            horizon.value: self.horizons[horizon].as_dict() for horizon in HORIZONS
        }


def compute_horizon_diagnostics(
    horizon: Horizon,
    labels: Sequence[bool],
) -> HorizonDiagnostics:
    """Summarize resolved labels (one per round) and score constant predictors."""

    actual = np.asarray(labels, dtype=bool)
    total = int(actual.size)
    n_true = int(actual.sum())
    if total == 0:
        return HorizonDiagnostics(
            horizon=horizon,
            n_resolved=0,
            n_true=0,
            n_false=0,
            p_true=None,
            random=RANDOM_BASELINE_LL,
            always_true=None,
            always_false=None,
            prevalence_best=None,
        )

    p_true = n_true / total
    return HorizonDiagnostics(
        horizon=horizon,
        n_resolved=total,
        n_true=n_true,
        n_false=total - n_true,
        p_true=p_true,
        random=RANDOM_BASELINE_LL,
        always_true=finite_or_none(mean_log_loss(np.full(total, 1.0 - EPSILON), actual)),
        always_false=finite_or_none(mean_log_loss(np.full(total, EPSILON), actual)),
        prevalence_best=finite_or_none(mean_log_loss(np.full(total, p_true), actual)),
    )


def compute_dataset_diagnostics(history: RunHistory) -> DatasetDiagnostics:
    """Per-horizon diagnostics over the run's resolved ground truth."""

    resolved = history.labels_by_horizon()
    return DatasetDiagnostics(
        horizons=per_horizon(
            lambda horizon: compute_horizon_diagnostics(
                horizon, [label for _, label in resolved[horizon]]
            )
        )
    )


def _fmt(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.4f}"


def format_dataset_diagnostics(diagnostics: DatasetDiagnostics) -> str:
    """Plain-text table of label balance and baselines, one line per horizon."""

    lines = ["horizon  resolved  true  false  p_true  random  always_t  always_f  prev_best"]
    for horizon in HORIZONS:
        item = diagnostics[horizon]
        lines.append(
            f"{horizon.value:<8} {item.n_resolved:>8} {item.n_true:>5} {item.n_false:>6} "
            f"{_fmt(item.p_true):>7} {_fmt(item.random):>7} {_fmt(item.always_true):>9} "
            f"{_fmt(item.always_false):>9} {_fmt(item.prevalence_best):>10}"
        )
    return "\n".join(lines)
