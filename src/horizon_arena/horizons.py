"""Prediction horizons, failure taxonomy, and exhaustive per-horizon helpers."""

from __future__ import annotations

from enum import Enum
from typing import Callable, Iterator, Mapping, TypeVar

from horizon_arena.errors import ContractViolation

T = TypeVar("T")


class Horizon(str, Enum):
    """Fixed prediction time-scales scored in every round."""

    M15 = "15m"
    H1 = "1h"
    H4 = "4h"
    H24 = "24h"

    def __str__(self) -> str:
        return self.value


class FailureType(str, Enum):
    """Typed reason a model produced no usable prediction for a round."""

    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    PARSE = "parse"
    SCHEMA = "schema"
    OTHER = "other"

    def __str__(self) -> str:
        return self.value


HORIZONS: tuple[Horizon, ...] = tuple(Horizon)


def iter_horizons() -> Iterator[Horizon]:
    """Yield every horizon in canonical order."""

    yield from HORIZONS


def parse_horizon(value: object) -> Horizon:
    """Resolve a horizon member from an enum or its string id."""

    if isinstance(value, Horizon):
        return value
    token = str(value).strip().lower()
    for horizon in HORIZONS:
        if horizon.value == token:
            return horizon
    raise ContractViolation(
        "unknown_horizon",
        key=str(value),
        detail=f"horizon must be one of {[h.value for h in HORIZONS]}",
    )


def parse_failure_type(value: object) -> FailureType:
    if isinstance(value, FailureType):
        return value
    token = str(value).strip().lower()
    try:
        return FailureType(token)
    except ValueError as exc:
        raise ContractViolation(
            "invalid_outcome",
            key="failure_type",
            detail=f"failure_type must be one of {[f.value for f in FailureType]}",
        ) from exc


def per_horizon(factory: Callable[[Horizon], T]) -> dict[Horizon, T]:
    """Build a mapping holding exactly one value per horizon."""

    return {horizon: factory(horizon) for horizon in HORIZONS}


def require_all_horizons(mapping: Mapping[Horizon, T], *, key: str) -> dict[Horizon, T]:
    """Fail unless ``mapping`` covers every horizon and nothing else."""

    missing = [h.value for h in HORIZONS if h not in mapping]
    if missing:
        raise ContractViolation(
            "missing_horizon",
            key=key,
            detail="missing horizons: " + ", ".join(missing),
        )
    extra = [str(h) for h in mapping if h not in HORIZONS]
    if extra:
        raise ContractViolation(
            "unknown_horizon",
            key=key,
            detail="unexpected horizons: " + ", ".join(extra),
        )
    return {horizon: mapping[horizon] for horizon in HORIZONS}
