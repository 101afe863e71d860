"""Per-model, per-horizon validity gate.

A horizon is invalid for a model when coverage is too low, the failure rate is
too high, the model is a degenerate (near-constant) predictor, or it is
confidently wrong too often. Verdicts are independent per horizon.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

import numpy as np

from horizon_arena.config import ValidityConfig
from horizon_arena.data.history import ModelHistory, RunHistory
from horizon_arena.horizons import HORIZONS, Horizon, per_horizon

logger = logging.getLogger(__name__)

VALIDITY_RULES: tuple[str, ...] = (
    "coverage",
    "failure_rate",
    "degenerate_predictor",
    "extreme_wrong_rate",
)
UNIQUE_P_DECIMALS = 6


@dataclass(frozen=True)
class GateMetrics:
    """Measurements the validity rules are evaluated against."""

    effective_n: int
    intended_n: int
    failed_n: int
    coverage: float
    failure_rate: float
    unique_p: int
    p_std: Optional[float]
    p_min: Optional[float]
    p_max: Optional[float]
    p_mean: Optional[float]
    extreme_wrong_rate: Optional[float]

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class HorizonValidity:
    horizon: Horizon
    violations: tuple[str, ...]
    metrics: GateMetrics

    @property
    def is_valid(self) -> bool:
        return not self.violations

    def as_dict(self) -> dict[str, Any]:
        return {
            "horizon": self.horizon.value,
            "is_valid": self.is_valid,
            "violations": list(self.violations),
            "metrics": self.metrics.as_dict(),
        }


@dataclass(frozen=True)
class ValidityResult:
    """Validity verdict for one model across every horizon."""

    model_id: str
    horizons: Mapping[Horizon, HorizonValidity]

    @property
    def valid_horizons(self) -> tuple[Horizon, ...]:
        return tuple(h for h in HORIZONS if self.horizons[h].is_valid)

    @property
    def excluded(self) -> dict[Horizon, tuple[str, ...]]:
        return {
            h: self.horizons[h].violations
            for h in HORIZONS
            if not self.horizons[h].is_valid
        }

    @property
    def any_valid(self) -> bool:
        return bool(self.valid_horizons)

    def is_valid(self, horizon: Horizon) -> bool:
        return self.horizons[horizon].is_valid

    def as_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "valid_horizons": [h.value for h in self.valid_horizons],
            "horizons": {h.value: self.horizons[h].as_dict() for h in HORIZONS},
        }


def compute_gate_metrics(
    model: ModelHistory,
    horizon: Horizon,
    *,
    intended_rounds: int,
    config: ValidityConfig,
) -> GateMetrics:
    preds = model.predictions(horizon)
    labels = model.labels(horizon)
    effective_n = int(preds.size)
    failed_n = model.failed_rounds(horizon)

    if preds.size:
        extreme_wrong = ((preds > config.extreme_high) & ~labels) | (
            (preds < config.extreme_low) & labels
        )
        p_std: Optional[float] = float(np.std(preds))
        p_min: Optional[float] = float(preds.min())
        p_max: Optional[float] = float(preds.max())
        p_mean: Optional[float] = float(preds.mean())
        extreme_wrong_rate: Optional[float] = float(extreme_wrong.mean())
    else:
        p_std = p_min = p_max = p_mean = extreme_wrong_rate = None

    return GateMetrics(
        effective_n=effective_n,
        intended_n=intended_rounds,
        failed_n=failed_n,
        coverage=effective_n / intended_rounds if intended_rounds else 0.0,
        failure_rate=failed_n / intended_rounds if intended_rounds else 0.0,
        unique_p=int(np.unique(np.round(preds, UNIQUE_P_DECIMALS)).size),
        p_std=p_std,
        p_min=p_min,
        p_max=p_max,
        p_mean=p_mean,
        extreme_wrong_rate=extreme_wrong_rate,
    )


def is_degenerate(metrics: GateMetrics, config: ValidityConfig) -> bool:
    """Near-constant output over at least two effective rounds."""

    if metrics.effective_n < 2 or metrics.p_std is None:
        return False
    return metrics.unique_p < config.max_unique_p and metrics.p_std < config.max_p_std_dev


def evaluate_horizon_validity(
    model: ModelHistory,
    horizon: Horizon,
    *,
    intended_rounds: int,
    config: ValidityConfig,
) -> HorizonValidity:
    metrics = compute_gate_metrics(
        model, horizon, intended_rounds=intended_rounds, config=config
    )
    violations: list[str] = []
    if metrics.coverage < config.min_coverage:
        violations.append("coverage")
    if metrics.failure_rate > config.max_failure_rate:
        violations.append("failure_rate")
    if is_degenerate(metrics, config):
        violations.append("degenerate_predictor")
    if (
        metrics.extreme_wrong_rate is not None
        and metrics.extreme_wrong_rate > config.max_extreme_wrong_rate
    ):
        violations.append("extreme_wrong_rate")
    return HorizonValidity(
        horizon=horizon, violations=tuple(violations), metrics=metrics
    )


def evaluate_model_validity(
    model: ModelHistory,
    *,
    intended_rounds: int,
    config: ValidityConfig | None = None,
) -> ValidityResult:
    config = config or ValidityConfig()
    result = ValidityResult(
        model_id=model.model_id,
        horizons=per_horizon(
            lambda horizon: evaluate_horizon_validity(
                model, horizon, intended_rounds=intended_rounds, config=config
            )
        ),
    )
    for horizon, rules in result.excluded.items():
        logger.warning(
            "model %s invalid on %s: %s", model.model_id, horizon.value, ",".join(rules)
        )
    return result


def evaluate_validity(
    history: RunHistory,
    config: ValidityConfig | None = None,
) -> dict[str, ValidityResult]:
    """Validity verdicts for every model in the run, keyed by model id."""

    config = config or ValidityConfig()
    return {
        model_id: evaluate_model_validity(
            view, intended_rounds=history.intended_rounds, config=config
        )
        for model_id, view in history.views().items()
    }
