"""Frame and value contract validators shared by the outcome feed."""

from __future__ import annotations

import math
from typing import Iterable, Optional

import pandas as pd

from horizon_arena.errors import ContractViolation

_TRUE_TOKENS = {"true", "t", "yes", "y", "1"}
_FALSE_TOKENS = {"false", "f", "no", "n", "0"}


def require_columns(frame: pd.DataFrame, required: Iterable[str], *, key: str) -> None:
    """Fail fast when required columns are missing."""

    missing = [name for name in required if name not in frame.columns]
    if missing:
        raise ContractViolation(
            "missing_column",
            key=key,
            detail=f"missing required columns: {','.join(sorted(missing))}",
        )


def is_missing(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def coerce_probability(
    value: object,
    *,
    key: str,
    round_index: int | None = None,
) -> float:
    """Return ``value`` as a finite float in ``[0, 1]``."""

    if isinstance(value, bool):
        raise ContractViolation(
            "invalid_probability",
            round_index=round_index,
            key=key,
            detail="probability must be numeric, got bool",
        )
    try:
        probability = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ContractViolation(
            "invalid_probability",
            round_index=round_index,
            key=key,
            detail=f"probability must be numeric, got {value!r}",
        ) from exc
    if not math.isfinite(probability) or probability < 0.0 or probability > 1.0:
        raise ContractViolation(
            "invalid_probability",
            round_index=round_index,
            key=key,
            detail=f"probability must be in [0, 1], got {probability}",
        )
    return probability


def coerce_label(
    value: object,
    *,
    key: str,
    round_index: int | None = None,
) -> Optional[bool]:
    """Return a resolved boolean label, or None when unresolved."""

    if is_missing(value):
        return None
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
    else:
        try:
            numeric = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            numeric = math.nan
        if numeric in (0.0, 1.0):
            return bool(numeric)
    raise ContractViolation(
        "invalid_outcome",
        round_index=round_index,
        key=key,
        detail=f"label must be boolean or 0/1, got {value!r}",
    )
