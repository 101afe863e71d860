"""Round outcome history: the single writer and its read-only per-model views.

``RunHistory`` is the only object that accepts new outcomes. Every consumer
(validity gate, qualification, stability, ensemble) receives ``ModelHistory``
views whose per-horizon series are immutable tuples in round order, so all
downstream computation is a pure function of what was recorded.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping, Optional

import numpy as np
import pandas as pd

from horizon_arena.data.rounds import ModelRoundResult
from horizon_arena.data.validators import (
    coerce_label,
    coerce_probability,
    is_missing,
    require_columns,
)
from horizon_arena.errors import ContractViolation
from horizon_arena.evaluation.metrics import log_loss
from horizon_arena.horizons import (
    HORIZONS,
    FailureType,
    Horizon,
    parse_failure_type,
    parse_horizon,
    per_horizon,
)

HISTORY_COLUMNS: tuple[str, ...] = (
    "round",
    "model_id",
    "horizon",
    "probability",
    "label",
    "failure_type",
)
_REQUIRED_FRAME_COLUMNS = ("round", "model_id", "horizon", "probability", "label")
_HORIZON_ORDER = {horizon: position for position, horizon in enumerate(HORIZONS)}


def _coerce_round(value: object, *, key: str) -> int:
    if isinstance(value, bool):
        raise ContractViolation(
            "invalid_outcome", key=key, detail="round index must be an integer"
        )
    try:
        numeric = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ContractViolation(
            "invalid_outcome",
            key=key,
            detail=f"round index must be an integer, got {value!r}",
        ) from exc
    if not math.isfinite(numeric) or not numeric.is_integer():
        raise ContractViolation(
            "invalid_outcome",
            key=key,
            detail=f"round index must be an integer, got {value!r}",
        )
    if numeric < 0:
        raise ContractViolation(
            "invalid_outcome", key=key, detail="round index must be >= 0"
        )
    return int(numeric)


@dataclass(frozen=True)
class RoundOutcome:
    """One model's result for one horizon in one round.

    A failed outcome carries a ``FailureType`` and no probability; a scored
    outcome carries a probability in ``[0, 1]``. ``label`` is the round's
    resolved ground truth, or None while unresolved.
    """

    round_index: int
    model_id: str
    horizon: Horizon
    probability: Optional[float] = None
    label: Optional[bool] = None
    failure: Optional[FailureType] = None

    def __post_init__(self) -> None:
        round_index = _coerce_round(self.round_index, key="round")
        model_id = str(self.model_id).strip() if self.model_id is not None else ""
        if not model_id:
            raise ContractViolation(
                "invalid_outcome",
                round_index=round_index,
                key="model_id",
                detail="model_id must be a non-empty string",
            )
        horizon = parse_horizon(self.horizon)
        key = f"{model_id}/{horizon.value}"

        failure = None if self.failure is None else parse_failure_type(self.failure)
        probability: Optional[float]
        if failure is None:
            if self.probability is None:
                raise ContractViolation(
                    "invalid_outcome",
                    round_index=round_index,
                    key=key,
                    detail="outcome needs either a probability or a failure type",
                )
            probability = coerce_probability(
                self.probability, key=key, round_index=round_index
            )
        else:
            if self.probability is not None:
                raise ContractViolation(
                    "invalid_outcome",
                    round_index=round_index,
                    key=key,
                    detail="failed outcome must not carry a probability",
                )
            probability = None

        label = coerce_label(self.label, key=key, round_index=round_index)

        object.__setattr__(self, "round_index", round_index)
        object.__setattr__(self, "model_id", model_id)
        object.__setattr__(self, "horizon", horizon)
        object.__setattr__(self, "probability", probability)
        object.__setattr__(self, "label", label)
        object.__setattr__(self, "failure", failure)

    @property
    def failed(self) -> bool:
        return self.failure is not None

    @property
    def is_scored(self) -> bool:
        """A probability was produced and the round's label is resolved."""

        return self.failure is None and self.label is not None

    @property
    def loss(self) -> Optional[float]:
        if not self.is_scored:
            return None
        return float(log_loss(self.probability, self.label))


class ModelHistory:
    """Read-only chronological view of one model's outcomes per horizon."""

    def __init__(
        self,
        model_id: str,
        outcomes: Mapping[Horizon, Iterable[RoundOutcome]],
    ) -> None:
        self._model_id = model_id
        self._outcomes: dict[Horizon, tuple[RoundOutcome, ...]] = per_horizon(
            lambda horizon: tuple(
                sorted(outcomes.get(horizon, ()), key=lambda item: item.round_index)
            )
        )
        self._by_round: dict[Horizon, dict[int, RoundOutcome]] = per_horizon(
            lambda horizon: {
                item.round_index: item for item in self._outcomes[horizon]
            }
        )

    def __repr__(self) -> str:
        counts = ", ".join(
            f"{horizon.value}={len(self._outcomes[horizon])}" for horizon in HORIZONS
        )
        return f"ModelHistory({self._model_id!r}, {counts})"

    @property
    def model_id(self) -> str:
        return self._model_id

    def outcomes(self, horizon: Horizon) -> tuple[RoundOutcome, ...]:
        return self._outcomes[parse_horizon(horizon)]

    def scored(self, horizon: Horizon) -> tuple[RoundOutcome, ...]:
        return tuple(item for item in self.outcomes(horizon) if item.is_scored)

    def predictions(self, horizon: Horizon) -> np.ndarray:
        return np.asarray(
            [item.probability for item in self.scored(horizon)], dtype=float
        )

    def labels(self, horizon: Horizon) -> np.ndarray:
        return np.asarray([item.label for item in self.scored(horizon)], dtype=bool)

    def log_losses(self, horizon: Horizon) -> np.ndarray:
        """Per-round log losses of scored outcomes, in round order."""

        scored = self.scored(horizon)
        if not scored:
            return np.asarray([], dtype=float)
        return log_loss(
            np.asarray([item.probability for item in scored], dtype=float),
            np.asarray([item.label for item in scored], dtype=bool),
        )

    def effective_rounds(self, horizon: Horizon) -> int:
        return len(self.scored(horizon))

    def failed_rounds(self, horizon: Horizon) -> int:
        return sum(1 for item in self.outcomes(horizon) if item.failed)

    def failures_by_type(self, horizon: Horizon | None = None) -> dict[FailureType, int]:
        """Failure tallies for one horizon, or across all horizons."""

        horizons = HORIZONS if horizon is None else (parse_horizon(horizon),)
        tallies = {failure: 0 for failure in FailureType}
        for current in horizons:
            for item in self._outcomes[current]:
                if item.failure is not None:
                    tallies[item.failure] += 1
        return tallies

    def outcome_at(self, horizon: Horizon, round_index: int) -> Optional[RoundOutcome]:
        return self._by_round[parse_horizon(horizon)].get(round_index)


class RunHistory:
    """Append-only store of round outcomes for one benchmark run."""

    def __init__(self, intended_rounds: int | None = None) -> None:
        if intended_rounds is not None and intended_rounds < 0:
            raise ContractViolation(
                "invalid_outcome",
                key="intended_rounds",
                detail="intended_rounds must be >= 0",
            )
        self._intended_rounds = intended_rounds
        self._series: dict[tuple[str, Horizon], list[RoundOutcome]] = {}
        self._keys: set[tuple[int, str, Horizon]] = set()
        self._labels: dict[tuple[int, Horizon], bool] = {}
        self._rounds: set[int] = set()

    def __len__(self) -> int:
        return len(self._keys)

    def record(self, outcome: RoundOutcome) -> None:
        """Append one outcome, enforcing uniqueness, order and label agreement."""

        identity = (outcome.round_index, outcome.model_id, outcome.horizon)
        key = f"{outcome.model_id}/{outcome.horizon.value}"
        if identity in self._keys:
            raise ContractViolation(
                "duplicate_outcome",
                round_index=outcome.round_index,
                key=key,
                detail="outcome already recorded for this round",
            )

        series = self._series.setdefault((outcome.model_id, outcome.horizon), [])
        if series and series[-1].round_index > outcome.round_index:
            raise ContractViolation(
                "out_of_order_round",
                round_index=outcome.round_index,
                key=key,
                detail=f"latest recorded round is {series[-1].round_index}",
            )

        label_key = (outcome.round_index, outcome.horizon)
        if outcome.label is not None:
            known = self._labels.get(label_key)
            if known is not None and known != outcome.label:
                raise ContractViolation(
                    "label_conflict",
                    round_index=outcome.round_index,
                    key=key,
                    detail=f"label {outcome.label} disagrees with recorded {known}",
                )
            self._labels[label_key] = outcome.label

        series.append(outcome)
        self._keys.add(identity)
        self._rounds.add(outcome.round_index)

    def record_round(
        self,
        round_index: int,
        results: Mapping[str, ModelRoundResult],
        labels: Mapping[Any, Optional[bool]] | None = None,
    ) -> list[RoundOutcome]:
        """Convert one collected round into outcomes and record them.

        Horizons a model neither predicted nor failed are not recorded.
        """

        resolved = {
            parse_horizon(horizon): label for horizon, label in (labels or {}).items()
        }
        outcomes: list[RoundOutcome] = []
        for model_id in sorted(results):
            result = results[model_id]
            for horizon in HORIZONS:
                label = resolved.get(horizon)
                if horizon in result.probabilities:
                    outcome = RoundOutcome(
                        round_index=round_index,
                        model_id=model_id,
                        horizon=horizon,
                        probability=result.probabilities[horizon],
                        label=label,
                    )
                elif horizon in result.failures:
                    outcome = RoundOutcome(
                        round_index=round_index,
                        model_id=model_id,
                        horizon=horizon,
                        label=label,
                        failure=result.failures[horizon],
                    )
                else:
                    continue
                outcomes.append(outcome)

        for outcome in outcomes:
            self.record(outcome)
        return outcomes

    @property
    def intended_rounds(self) -> int:
        if self._intended_rounds is not None:
            return self._intended_rounds
        return len(self._rounds)

    @property
    def model_ids(self) -> tuple[str, ...]:
        return tuple(sorted({model_id for model_id, _ in self._series}))

    @property
    def round_indices(self) -> tuple[int, ...]:
        return tuple(sorted(self._rounds))

    def view(self, model_id: str) -> ModelHistory:
        if model_id not in self.model_ids:
            raise ContractViolation(
                "unknown_model",
                key=str(model_id),
                detail="no outcomes recorded for model",
            )
        return ModelHistory(
            model_id,
            {
                horizon: tuple(self._series.get((model_id, horizon), ()))
                for horizon in HORIZONS
            },
        )

    def views(self) -> dict[str, ModelHistory]:
        return {model_id: self.view(model_id) for model_id in self.model_ids}

    def label_for(self, round_index: int, horizon: Horizon) -> Optional[bool]:
        return self._labels.get((round_index, parse_horizon(horizon)))

    def labels_by_horizon(self) -> dict[Horizon, tuple[tuple[int, bool], ...]]:
        """Resolved ground truth per horizon: one ``(round, label)`` per round."""

        return per_horizon(
            lambda horizon: tuple(
                (round_index, label)
                for (round_index, current), label in sorted(
                    self._labels.items(), key=lambda item: item[0][0]
                )
                if current == horizon
            )
        )

    def iter_outcomes(self) -> Iterator[RoundOutcome]:
        """All outcomes ordered by round, model id and horizon."""

        everything = [item for series in self._series.values() for item in series]
        yield from sorted(
            everything,
            key=lambda item: (
                item.round_index,
                item.model_id,
                _HORIZON_ORDER[item.horizon],
            ),
        )

    @classmethod
    def from_outcomes(
        cls,
        outcomes: Iterable[RoundOutcome],
        *,
        intended_rounds: int | None = None,
    ) -> "RunHistory":
        """Build a history from outcomes in any order; they are recorded by round."""

        history = cls(intended_rounds=intended_rounds)
        ordered = sorted(
            outcomes,
            key=lambda item: (
                item.round_index,
                item.model_id,
                _HORIZON_ORDER[item.horizon],
            ),
        )
        for outcome in ordered:
            history.record(outcome)
        return history

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        *,
        intended_rounds: int | None = None,
    ) -> "RunHistory":
        """Load outcomes from a frame with ``HISTORY_COLUMNS``.

        ``failure_type`` is optional; blank probabilities require a failure type.
        """

        require_columns(frame, _REQUIRED_FRAME_COLUMNS, key="run_history")
        has_failures = "failure_type" in frame.columns

        outcomes: list[RoundOutcome] = []
        for position, row in enumerate(frame.to_dict(orient="records")):
            key = f"row[{position}]"
            round_index = _coerce_round(row["round"], key=key)
            failure_raw = row.get("failure_type") if has_failures else None
            probability_raw = row["probability"]
            outcomes.append(
                RoundOutcome(
                    round_index=round_index,
                    model_id=row["model_id"],
                    horizon=row["horizon"],
                    probability=None if is_missing(probability_raw) else probability_raw,
                    label=row["label"],
                    failure=None if is_missing(failure_raw) else failure_raw,
                )
            )
        return cls.from_outcomes(outcomes, intended_rounds=intended_rounds)

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "round": item.round_index,
                "model_id": item.model_id,
                "horizon": item.horizon.value,
                "probability": item.probability,
                "label": item.label,
                "failure_type": None if item.failure is None else item.failure.value,
            }
            for item in self.iter_outcomes()
        ]
        return pd.DataFrame(rows, columns=list(HISTORY_COLUMNS))
