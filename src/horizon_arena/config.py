"""Arena policy defaults, validation, and typed configuration objects."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from horizon_arena.errors import ContractViolation

QUALIFICATION_MODES: tuple[str, ...] = ("prevalence_margin", "top_percent")

DEFAULT_ARENA_POLICY: dict[str, Any] = {
    "version": 1,
    "validity": {
        "min_coverage": 0.8,
        "max_failure_rate": 0.1,
        "max_unique_p": 2,
        "max_p_std_dev": 0.02,
        "max_extreme_wrong_rate": 0.2,
        "extreme_high": 0.8,
        "extreme_low": 0.2,
    },
    "qualification": {
        "mode": "prevalence_margin",
        "prevalence_margin": 0.1,
        "random_margin": 0.1,
        "top_percent": 0.7,
        "min_informative_prevalence_ll": 0.1,
    },
    "stability": {
        "window_size": 6,
        "max_regret": 1.5,
        "stability_multiplier": 2.0,
    },
    "ensemble": {
        "rolling_window_size": 6,
        "alpha": 4.0,
        "min_models": 3,
    },
    "invariants": {
        "min_effective_rounds_for_arena": 10,
        "min_minority_for_rankable": 5,
        "min_minority_ratio": 0.1,
        "prevalence_bounds": [0.1, 0.9],
    },
}


def _merge_dict(base: Mapping[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = dict(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), Mapping):
            merged[key] = _merge_dict(base[key], value)
        else:
            merged[key] = value
    return merged


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML document as a dictionary."""

    with Path(path).open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ContractViolation(
            "invalid_yaml_root",
            key=str(path),
            detail="top-level YAML payload must be a mapping",
        )
    return dict(payload)


def _invalid(key: str, detail: str) -> ContractViolation:
    return ContractViolation("invalid_arena_policy", key=key, detail=detail)


def _as_float(section: Mapping[str, Any], name: str, *, prefix: str) -> float:
    key = f"{prefix}.{name}"
    value = section.get(name)
    if isinstance(value, bool):
        raise _invalid(key, "value must be numeric")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise _invalid(key, "value must be numeric") from exc


def _as_int(section: Mapping[str, Any], name: str, *, prefix: str) -> int:
    key = f"{prefix}.{name}"
    value = section.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _invalid(key, "value must be an integer")
    if int(value) != value:
        raise _invalid(key, "value must be an integer")
    return int(value)


def _require_unit_interval(value: float, *, key: str, open_low: bool = False) -> float:
    if open_low and value <= 0.0:
        raise _invalid(key, "value must be in (0, 1]")
    if value < 0.0 or value > 1.0:
        raise _invalid(key, "value must be in [0, 1]")
    return value


def _validate_validity(section: Mapping[str, Any]) -> dict[str, Any]:
    prefix = "validity"
    out = {
        "min_coverage": _require_unit_interval(
            _as_float(section, "min_coverage", prefix=prefix),
            key="validity.min_coverage",
        ),
        "max_failure_rate": _require_unit_interval(
            _as_float(section, "max_failure_rate", prefix=prefix),
            key="validity.max_failure_rate",
        ),
        "max_unique_p": _as_int(section, "max_unique_p", prefix=prefix),
        "max_p_std_dev": _as_float(section, "max_p_std_dev", prefix=prefix),
        "max_extreme_wrong_rate": _require_unit_interval(
            _as_float(section, "max_extreme_wrong_rate", prefix=prefix),
            key="validity.max_extreme_wrong_rate",
        ),
        "extreme_high": _require_unit_interval(
            _as_float(section, "extreme_high", prefix=prefix),
            key="validity.extreme_high",
        ),
        "extreme_low": _require_unit_interval(
            _as_float(section, "extreme_low", prefix=prefix),
            key="validity.extreme_low",
        ),
    }
    if out["max_unique_p"] < 1:
        raise _invalid("validity.max_unique_p", "max_unique_p must be >= 1")
    if out["max_p_std_dev"] < 0.0:
        raise _invalid("validity.max_p_std_dev", "max_p_std_dev must be >= 0")
    if out["extreme_low"] >= out["extreme_high"]:
        raise _invalid(
            "validity.extreme_low",
            "extreme_low must be strictly below extreme_high",
        )
    return out


def _validate_qualification(section: Mapping[str, Any]) -> dict[str, Any]:
    prefix = "qualification"
    mode = str(section.get("mode", "")).strip().lower()
    if mode not in QUALIFICATION_MODES:
        raise _invalid(
            "qualification.mode",
            f"mode must be one of {list(QUALIFICATION_MODES)}",
        )
    out = {
        "mode": mode,
        "prevalence_margin": _as_float(section, "prevalence_margin", prefix=prefix),
        "random_margin": _require_unit_interval(
            _as_float(section, "random_margin", prefix=prefix),
            key="qualification.random_margin",
        ),
        "top_percent": _require_unit_interval(
            _as_float(section, "top_percent", prefix=prefix),
            key="qualification.top_percent",
            open_low=True,
        ),
        "min_informative_prevalence_ll": _as_float(
            section, "min_informative_prevalence_ll", prefix=prefix
        ),
    }
    if out["prevalence_margin"] < 0.0:
        raise _invalid(
            "qualification.prevalence_margin", "prevalence_margin must be >= 0"
        )
    return out


def _validate_stability(section: Mapping[str, Any]) -> dict[str, Any]:
    prefix = "stability"
    out = {
        "window_size": _as_int(section, "window_size", prefix=prefix),
        "max_regret": _as_float(section, "max_regret", prefix=prefix),
        "stability_multiplier": _as_float(
            section, "stability_multiplier", prefix=prefix
        ),
    }
    if out["window_size"] < 1:
        raise _invalid("stability.window_size", "window_size must be >= 1")
    if out["max_regret"] <= 0.0:
        raise _invalid("stability.max_regret", "max_regret must be > 0")
    if out["stability_multiplier"] <= 0.0:
        raise _invalid(
            "stability.stability_multiplier", "stability_multiplier must be > 0"
        )
    return out


def _validate_ensemble(section: Mapping[str, Any]) -> dict[str, Any]:
    prefix = "ensemble"
    out = {
        "rolling_window_size": _as_int(section, "rolling_window_size", prefix=prefix),
        "alpha": _as_float(section, "alpha", prefix=prefix),
        "min_models": _as_int(section, "min_models", prefix=prefix),
    }
    if out["rolling_window_size"] < 1:
        raise _invalid(
            "ensemble.rolling_window_size", "rolling_window_size must be >= 1"
        )
    if out["alpha"] < 0.0:
        raise _invalid("ensemble.alpha", "alpha must be >= 0")
    if out["min_models"] < 1:
        raise _invalid("ensemble.min_models", "min_models must be >= 1")
    return out


def _validate_invariants(section: Mapping[str, Any]) -> dict[str, Any]:
    prefix = "invariants"
    bounds_raw = section.get("prevalence_bounds")
    if (
        not isinstance(bounds_raw, (list, tuple))
        or len(bounds_raw) != 2
    ):
        raise _invalid(
            "invariants.prevalence_bounds",
            "prevalence_bounds must be a [low, high] pair",
        )
    try:
        low, high = float(bounds_raw[0]), float(bounds_raw[1])
    except (TypeError, ValueError) as exc:
        raise _invalid(
            "invariants.prevalence_bounds", "prevalence bounds must be numeric"
        ) from exc
    if not 0.0 <= low <= high <= 1.0:
        raise _invalid(
            "invariants.prevalence_bounds",
            "prevalence bounds must satisfy 0 <= low <= high <= 1",
        )
    out = {
        "min_effective_rounds_for_arena": _as_int(
            section, "min_effective_rounds_for_arena", prefix=prefix
        ),
        "min_minority_for_rankable": _as_int(
            section, "min_minority_for_rankable", prefix=prefix
        ),
        "min_minority_ratio": _require_unit_interval(
            _as_float(section, "min_minority_ratio", prefix=prefix),
            key="invariants.min_minority_ratio",
        ),
        "prevalence_bounds": [low, high],
    }
    for name in ("min_effective_rounds_for_arena", "min_minority_for_rankable"):
        if out[name] < 0:
            raise _invalid(f"invariants.{name}", f"{name} must be >= 0")
    return out


def validate_arena_policy(policy: Mapping[str, Any] | None) -> dict[str, Any]:
    """Validate and normalize the arena policy contract."""

    merged = _merge_dict(copy.deepcopy(DEFAULT_ARENA_POLICY), policy or {})

    try:
        version = int(merged["version"])
    except (TypeError, ValueError) as exc:
        raise _invalid("version", "version must be an integer") from exc
    if version < 1:
        raise _invalid("version", "version must be >= 1")

    for section in ("validity", "qualification", "stability", "ensemble", "invariants"):
        if not isinstance(merged.get(section), Mapping):
            raise _invalid(section, f"{section} must be a mapping")

    return {
        "version": version,
        "validity": _validate_validity(merged["validity"]),
        "qualification": _validate_qualification(merged["qualification"]),
        "stability": _validate_stability(merged["stability"]),
        "ensemble": _validate_ensemble(merged["ensemble"]),
        "invariants": _validate_invariants(merged["invariants"]),
    }


def load_arena_policy(path: str | Path | None = None) -> dict[str, Any]:
    """Load a policy YAML (or defaults when ``path`` is None) and validate it."""

    if path is None:
        return validate_arena_policy(None)
    return validate_arena_policy(load_yaml(path))


@dataclass(frozen=True)
class ValidityConfig:
    min_coverage: float = 0.8
    max_failure_rate: float = 0.1
    max_unique_p: int = 2
    max_p_std_dev: float = 0.02
    max_extreme_wrong_rate: float = 0.2
    extreme_high: float = 0.8
    extreme_low: float = 0.2


@dataclass(frozen=True)
class QualificationConfig:
    mode: str = "prevalence_margin"
    prevalence_margin: float = 0.1
    random_margin: float = 0.1
    top_percent: float = 0.7
    min_informative_prevalence_ll: float = 0.1


@dataclass(frozen=True)
class StabilityConfig:
    window_size: int = 6
    max_regret: float = 1.5
    stability_multiplier: float = 2.0


@dataclass(frozen=True)
class EnsembleConfig:
    rolling_window_size: int = 6
    alpha: float = 4.0
    min_models: int = 3


@dataclass(frozen=True)
class InvariantsConfig:
    min_effective_rounds_for_arena: int = 10
    min_minority_for_rankable: int = 5
    min_minority_ratio: float = 0.1
    prevalence_bounds: tuple[float, float] = (0.1, 0.9)


@dataclass(frozen=True)
class ArenaConfig:
    """Typed view over a validated arena policy."""

    validity: ValidityConfig = field(default_factory=ValidityConfig)
    qualification: QualificationConfig = field(default_factory=QualificationConfig)
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    ensemble: EnsembleConfig = field(default_factory=EnsembleConfig)
    invariants: InvariantsConfig = field(default_factory=InvariantsConfig)

    @classmethod
    def from_policy(cls, policy: Mapping[str, Any] | None = None) -> "ArenaConfig":
        validated = validate_arena_policy(policy)
        invariants = dict(validated["invariants"])
        invariants["prevalence_bounds"] = tuple(invariants["prevalence_bounds"])
        return cls(
            validity=ValidityConfig(**validated["validity"]),
            qualification=QualificationConfig(**validated["qualification"]),
            stability=StabilityConfig(**validated["stability"]),
            ensemble=EnsembleConfig(**validated["ensemble"]),
            invariants=InvariantsConfig(**invariants),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ArenaConfig":
        return cls.from_policy(load_yaml(path))
