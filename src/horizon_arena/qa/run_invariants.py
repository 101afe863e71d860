"""Single derived snapshot of every run-level set and verdict.

``compute_run_invariants`` is the only place the gate, qualification and
stability results are combined. Renderers and exporters read the snapshot via
``is_qualified`` and ``as_dict`` instead of recomputing eligibility.

Model sets are nested::

    evaluated >= effective >= valid >= qualified >= arena_eligible

Run-level arena eligibility needs enough effective rounds on every horizon;
the per-horizon arena sets only look at that horizon's own count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from horizon_arena.config import ArenaConfig, InvariantsConfig
from horizon_arena.data.history import RunHistory
from horizon_arena.evaluation.baselines import (
    DatasetDiagnostics,
    HorizonDiagnostics,
    compute_dataset_diagnostics,
)
from horizon_arena.evaluation.stability import StabilityResult, evaluate_stability
from horizon_arena.horizons import HORIZONS, Horizon, parse_horizon, per_horizon
from horizon_arena.models.qualification import (
    QualificationResult,
    evaluate_qualification,
)
from horizon_arena.qa.validity_gate import ValidityResult, evaluate_validity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HorizonInvariants:
    horizon: Horizon
    n_resolved: int
    n_true: int
    n_false: int
    p_true: Optional[float]
    minority_count: int
    is_rankable: bool
    rankability_reason: str
    random_baseline: float
    prevalence_baseline: Optional[float]

    def as_dict(self) -> dict[str, Any]:
        return {
            "horizon": self.horizon.value,
            "n_resolved": self.n_resolved,
            "n_true": self.n_true,
            "n_false": self.n_false,
            "p_true": self.p_true,
            "minority_count": self.minority_count,
            "is_rankable": self.is_rankable,
            "rankability_reason": self.rankability_reason,
            "random_baseline": self.random_baseline,
            "prevalence_baseline": self.prevalence_baseline,
        }


@dataclass(frozen=True)
class ModelInvariants:
    model_id: str
    effective_n: Mapping[Horizon, int]
    failed_n: Mapping[Horizon, int]
    coverage: Mapping[Horizon, float]
    failure_rate: Mapping[Horizon, float]
    failures_by_type: Mapping[str, int]
    total_effective: int
    total_failed: int
    overall_coverage: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "effective_n": {h.value: self.effective_n[h] for h in HORIZONS},
            "failed_n": {h.value: self.failed_n[h] for h in HORIZONS},
            "coverage": {h.value: self.coverage[h] for h in HORIZONS},
            "failure_rate": {h.value: self.failure_rate[h] for h in HORIZONS},
            "failures_by_type": dict(self.failures_by_type),
            "total_effective": self.total_effective,
            "total_failed": self.total_failed,
            "overall_coverage": self.overall_coverage,
        }


@dataclass(frozen=True)
class RunInvariants:
    """Everything downstream consumers need to know about a run, computed once."""

    intended_rounds: int
    actual_rounds: int
    horizons: Mapping[Horizon, HorizonInvariants]
    models: Mapping[str, ModelInvariants]
    diagnostics: DatasetDiagnostics
    validity: Mapping[str, ValidityResult]
    qualification: QualificationResult
    stability: StabilityResult
    evaluated_models: tuple[str, ...]
    effective_models: tuple[str, ...]
    valid_models: tuple[str, ...]
    qualified_models: tuple[str, ...]
    arena_eligible_models: tuple[str, ...]
    valid_by_horizon: Mapping[Horizon, tuple[str, ...]]
    qualified_by_horizon: Mapping[Horizon, tuple[str, ...]]
    arena_eligible_by_horizon: Mapping[Horizon, tuple[str, ...]]

    def is_qualified(self, model_id: str, horizon: Horizon | str) -> bool:
        """Qualified on ``horizon`` after stability narrowing."""

        return model_id in self.qualified_by_horizon[parse_horizon(horizon)]

    @property
    def model_count(self) -> int:
        return len(self.evaluated_models)

    @property
    def rankable_horizons(self) -> tuple[Horizon, ...]:
        return tuple(h for h in HORIZONS if self.horizons[h].is_rankable)

    @property
    def non_rankable_horizons(self) -> tuple[Horizon, ...]:
        return tuple(h for h in HORIZONS if not self.horizons[h].is_rankable)

    def as_dict(self) -> dict[str, Any]:
        return {
            "intended_rounds": self.intended_rounds,
            "actual_rounds": self.actual_rounds,
            "model_count": self.model_count,
            "rankable_horizons": [h.value for h in self.rankable_horizons],
            "non_rankable_horizons": [h.value for h in self.non_rankable_horizons],
            "sets": {
                "evaluated": list(self.evaluated_models),
                "effective": list(self.effective_models),
                "valid": list(self.valid_models),
                "qualified": list(self.qualified_models),
                "arena_eligible": list(self.arena_eligible_models),
            },
            "by_horizon": {
                h.value: {
                    "valid": list(self.valid_by_horizon[h]),
                    "qualified": list(self.qualified_by_horizon[h]),
                    "arena_eligible": list(self.arena_eligible_by_horizon[h]),
                }
                for h in HORIZONS
            },
            "horizons": {h.value: self.horizons[h].as_dict() for h in HORIZONS},
            "models": {m: self.models[m].as_dict() for m in self.evaluated_models},
            "validity": {m: self.validity[m].as_dict() for m in sorted(self.validity)},
            "qualification": self.qualification.as_dict(),
            "stability": self.stability.as_dict(),
        }


def assess_rankability(
    diagnostics: HorizonDiagnostics,
    config: InvariantsConfig,
) -> tuple[bool, str]:
    """Decide whether a horizon's label balance supports ranking models."""

    if diagnostics.n_resolved == 0 or diagnostics.p_true is None:
        return False, "no resolved labels"
    minority = diagnostics.minority_count
    ratio = minority / diagnostics.n_resolved
    low, high = config.prevalence_bounds
    if minority < config.min_minority_for_rankable:
        return False, f"minority count {minority} < {config.min_minority_for_rankable}"
    if ratio < config.min_minority_ratio:
        return False, f"minority ratio {ratio:.3f} < {config.min_minority_ratio}"
    if not low <= diagnostics.p_true <= high:
        return False, f"p_true {diagnostics.p_true:.3f} outside [{low}, {high}]"
    return True, "rankable"


def _horizon_invariants(
    diagnostics: HorizonDiagnostics,
    config: InvariantsConfig,
) -> HorizonInvariants:
    rankable, reason = assess_rankability(diagnostics, config)
    return HorizonInvariants(
        horizon=diagnostics.horizon,
        n_resolved=diagnostics.n_resolved,
        n_true=diagnostics.n_true,
        n_false=diagnostics.n_false,
        p_true=diagnostics.p_true,
        minority_count=diagnostics.minority_count,
        is_rankable=rankable,
        rankability_reason=reason,
        random_baseline=diagnostics.random,
        prevalence_baseline=diagnostics.prevalence_best,
    )


def _model_invariants(history: RunHistory, model_id: str) -> ModelInvariants:
    view = history.view(model_id)
    intended = history.intended_rounds
    effective = per_horizon(view.effective_rounds)
    failed = per_horizon(view.failed_rounds)
    total_effective = sum(effective.values())
    slots = intended * len(HORIZONS)
    return ModelInvariants(
        model_id=model_id,
        effective_n=effective,
        failed_n=failed,
        coverage=per_horizon(lambda h: effective[h] / intended if intended else 0.0),
        failure_rate=per_horizon(lambda h: failed[h] / intended if intended else 0.0),
        failures_by_type={
            failure.value: count for failure, count in view.failures_by_type().items()
        },
        total_effective=total_effective,
        total_failed=sum(failed.values()),
        overall_coverage=total_effective / slots if slots else 0.0,
    )


def compute_run_invariants(
    history: RunHistory,
    config: ArenaConfig | None = None,
) -> RunInvariants:
    """Compute diagnostics, verdicts and the nested model sets for a run."""

    config = config or ArenaConfig()
    diagnostics = compute_dataset_diagnostics(history)
    validity = evaluate_validity(history, config.validity)
    qualification = evaluate_qualification(
        history, validity, diagnostics, config.qualification
    )
    stability = evaluate_stability(history, qualification, config.stability)

    models = {model_id: _model_invariants(history, model_id) for model_id in history.model_ids}
    evaluated = history.model_ids
    effective = tuple(m for m in evaluated if models[m].total_effective > 0)

    valid_by_horizon = per_horizon(
        lambda h: tuple(m for m in effective if validity[m].is_valid(h))
    )
    qualified_by_horizon = per_horizon(
        lambda h: tuple(
            m
            for m in stability.narrow(h, qualification.qualified(h))
            if m in set(valid_by_horizon[h])
        )
    )
    valid = tuple(m for m in effective if any(m in valid_by_horizon[h] for h in HORIZONS))
    qualified = tuple(
        m for m in valid if any(m in qualified_by_horizon[h] for h in HORIZONS)
    )
    min_rounds = config.invariants.min_effective_rounds_for_arena
    arena_eligible = tuple(
        m
        for m in qualified
        if all(models[m].effective_n[h] >= min_rounds for h in HORIZONS)
    )
    arena_by_horizon = per_horizon(
        lambda h: tuple(
            m for m in qualified_by_horizon[h] if models[m].effective_n[h] >= min_rounds
        )
    )

    invariants = RunInvariants(
        intended_rounds=history.intended_rounds,
        actual_rounds=len(history.round_indices),
        horizons=per_horizon(
            lambda h: _horizon_invariants(diagnostics[h], config.invariants)
        ),
        models=models,
        diagnostics=diagnostics,
        validity=validity,
        qualification=qualification,
        stability=stability,
        evaluated_models=evaluated,
        effective_models=effective,
        valid_models=valid,
        qualified_models=qualified,
        arena_eligible_models=arena_eligible,
        valid_by_horizon=valid_by_horizon,
        qualified_by_horizon=qualified_by_horizon,
        arena_eligible_by_horizon=arena_by_horizon,
    )
    logger.info(
        "run invariants: evaluated=%d effective=%d valid=%d qualified=%d arena_eligible=%d",
        len(evaluated),
        len(effective),
        len(valid),
        len(qualified),
        len(arena_eligible),
    )
    for horizon in HORIZONS:
        item = invariants.horizons[horizon]
        if not item.is_rankable:
            logger.warning("horizon %s not rankable: %s", horizon.value, item.rankability_reason)
    return invariants
