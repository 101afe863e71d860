"""Skill qualification of valid models per horizon.

Two policies are supported:

``prevalence_margin``
    A model qualifies when its mean log loss beats the prevalence baseline plus
    a margin and is at least ``random_margin`` better than a coin flip.
``top_percent``
    The best ``ceil(n * top_percent)`` valid models qualify, ties broken by
    model id.

When the prevalence baseline is itself near-perfect (a heavily imbalanced
horizon) the absolute-skill check is skipped and every valid model with a
mean log loss qualifies.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional

import numpy as np
import pandas as pd

from horizon_arena.config import QualificationConfig
from horizon_arena.data.history import RunHistory
from horizon_arena.errors import ContractViolation
from horizon_arena.evaluation.baselines import RANDOM_BASELINE_LL, DatasetDiagnostics
from horizon_arena.evaluation.metrics import finite_or_none
from horizon_arena.horizons import HORIZONS, Horizon, per_horizon

if TYPE_CHECKING:
    from horizon_arena.qa.validity_gate import ValidityResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HorizonQualification:
    """Qualification verdicts for the models considered on one horizon."""

    horizon: Horizon
    mode: str
    qualified: tuple[str, ...]
    disqualified: tuple[str, ...]
    threshold: Optional[float]
    prevalence_best: Optional[float]
    absolute_check_skipped: bool
    mean_log_loss: Mapping[str, Optional[float]] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "horizon": self.horizon.value,
            "mode": self.mode,
            "qualified": list(self.qualified),
            "disqualified": list(self.disqualified),
            "threshold": self.threshold,
            "prevalence_best": self.prevalence_best,
            "absolute_check_skipped": self.absolute_check_skipped,
            "mean_log_loss": dict(sorted(self.mean_log_loss.items())),
        }


@dataclass(frozen=True)
class QualificationResult:
    mode: str
    model_ids: tuple[str, ...]
    horizons: Mapping[Horizon, HorizonQualification]

    def qualified(self, horizon: Horizon) -> tuple[str, ...]:
        return self.horizons[horizon].qualified

    def is_qualified(self, model_id: str, horizon: Horizon) -> bool:
        return model_id in self.horizons[horizon].qualified

    def qualified_horizons(self, model_id: str) -> tuple[Horizon, ...]:
        return tuple(h for h in HORIZONS if self.is_qualified(model_id, h))

    @property
    def qualified_models(self) -> tuple[str, ...]:
        return tuple(m for m in self.model_ids if self.qualified_horizons(m))

    @property
    def hard_disqualified(self) -> tuple[str, ...]:
        """Models that qualify on no horizon at all."""

        return tuple(m for m in self.model_ids if not self.qualified_horizons(m))

    def as_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "qualified_models": list(self.qualified_models),
            "hard_disqualified": list(self.hard_disqualified),
            "horizons": {h.value: self.horizons[h].as_dict() for h in HORIZONS},
        }


def _top_percent_count(n: int, top_percent: float) -> int:
    # round first so 10 * 0.7 keeps 7 models, not 8
    return min(n, max(1, math.ceil(round(n * top_percent, 9)))) if n else 0


def qualify_horizon(
    horizon: Horizon,
    mean_losses: Mapping[str, Optional[float]],
    *,
    prevalence_best: Optional[float],
    config: QualificationConfig | None = None,
    random_baseline: float = RANDOM_BASELINE_LL,
) -> HorizonQualification:
    """Apply the configured policy to the valid models of one horizon.

    ``mean_losses`` maps each valid model to its mean log loss (None when the
    model has no scored rounds; such models never qualify).
    """

    config = config or QualificationConfig()
    scored = {
        model_id: float(loss)
        for model_id, loss in mean_losses.items()
        if finite_or_none(loss) is not None
    }

    skipped = (
        config.mode == "prevalence_margin"
        and (
            prevalence_best is None
            or prevalence_best < config.min_informative_prevalence_ll
        )
    )

    threshold: Optional[float]
    if config.mode == "prevalence_margin":
        if skipped:
            threshold = None
            qualified = set(scored)
        else:
            threshold = float(prevalence_best) + config.prevalence_margin
            ceiling = random_baseline * (1.0 - config.random_margin)
            qualified = {
                model_id
                for model_id, loss in scored.items()
                if loss < threshold and loss <= ceiling
            }
    elif config.mode == "top_percent":
        keep = _top_percent_count(len(scored), config.top_percent)
        ranking = pd.DataFrame(
            {"model_id": list(scored), "mean_log_loss": list(scored.values())}
        )
        if ranking.empty:
            threshold = None
            qualified = set()
        else:
            ranking = ranking.sort_values(
                ["mean_log_loss", "model_id"], ascending=[True, True]
            ).head(keep)
            threshold = float(ranking["mean_log_loss"].iloc[-1])
            qualified = set(ranking["model_id"].astype(str))
    else:
        raise ContractViolation(
            "invalid_arena_policy",
            key="qualification.mode",
            detail=f"unsupported qualification mode: {config.mode}",
        )

    return HorizonQualification(
        horizon=horizon,
        mode=config.mode,
        qualified=tuple(sorted(qualified)),
        disqualified=tuple(sorted(set(mean_losses) - qualified)),
        threshold=threshold,
        prevalence_best=prevalence_best,
        absolute_check_skipped=skipped,
        mean_log_loss={
            model_id: finite_or_none(loss) for model_id, loss in mean_losses.items()
        },
    )


def evaluate_qualification(
    history: RunHistory,
    validity: Mapping[str, ValidityResult],
    diagnostics: DatasetDiagnostics,
    config: QualificationConfig | None = None,
    *,
    model_ids: Iterable[str] | None = None,
) -> QualificationResult:
    """Qualify models per horizon; only models valid on a horizon are considered."""

    config = config or QualificationConfig()
    candidates = tuple(sorted(model_ids if model_ids is not None else history.model_ids))
    views = history.views()

    def _for_horizon(horizon: Horizon) -> HorizonQualification:
        mean_losses: dict[str, Optional[float]] = {}
        for model_id in candidates:
            verdict = validity.get(model_id)
            if verdict is None or not verdict.is_valid(horizon):
                continue
            losses = views[model_id].log_losses(horizon)
            mean_losses[model_id] = float(np.mean(losses)) if losses.size else None
        return qualify_horizon(
            horizon,
            mean_losses,
            prevalence_best=diagnostics[horizon].prevalence_best,
            config=config,
            random_baseline=diagnostics[horizon].random,
        )

    result = QualificationResult(
        mode=config.mode,
        model_ids=candidates,
        horizons=per_horizon(_for_horizon),
    )
    for horizon in HORIZONS:
        item = result.horizons[horizon]
        logger.info(
            "qualification %s on %s: %d/%d qualified%s",
            config.mode,
            horizon.value,
            len(item.qualified),
            len(item.mean_log_loss),
            " (absolute check skipped)" if item.absolute_check_skipped else "",
        )
    for model_id in result.hard_disqualified:
        logger.warning("model %s qualifies on no horizon", model_id)
    return result
