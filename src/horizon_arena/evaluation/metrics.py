"""Probabilistic forecast metric primitives.

All functions take probability predictions in ``[0, 1]`` and boolean (or 0/1)
labels. Mismatched input lengths are a programming error and raise
``ContractViolation("length_mismatch")`` immediately.

NaN is used internally for "insufficient signal" (e.g. a calibration slope over
a constant predictor); convert with :func:`finite_or_none` before handing a
value to another component.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence, Union

import numpy as np

from horizon_arena.errors import ContractViolation

EPSILON = 1e-15
ECE_BIN_COUNT = 10
DECISION_THRESHOLD = 0.5
# predictors spread narrower than this carry no usable slope signal
MIN_SLOPE_PREDICTOR_STD = 0.05

Probability = Union[float, Sequence[float], np.ndarray]
Label = Union[bool, int, float, Sequence[bool], Sequence[int], np.ndarray]


def finite_or_none(value: Optional[float]) -> Optional[float]:
    """Convert NaN/inf sentinels into an explicit missing value."""

    if value is None:
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _as_prediction_array(values: Probability, *, key: str) -> np.ndarray:
    preds = np.atleast_1d(np.asarray(values, dtype=float))
    if preds.ndim != 1:
        raise ContractViolation(
            "invalid_probability",
            key=key,
            detail="predictions must be a scalar or one-dimensional sequence",
        )
    if np.isnan(preds).any() or (preds < 0.0).any() or (preds > 1.0).any():
        raise ContractViolation(
            "invalid_probability",
            key=key,
            detail="predictions must be finite probabilities in [0, 1]",
        )
    return preds


def _as_label_array(values: Label, *, key: str) -> np.ndarray:
    labels = np.atleast_1d(np.asarray(values, dtype=float))
    if labels.ndim != 1 or not np.isin(labels, (0.0, 1.0)).all():
        raise ContractViolation(
            "invalid_outcome",
            key=key,
            detail="labels must be booleans or 0/1 values",
        )
    return labels


def _paired(
    predictions: Probability,
    labels: Label,
    *,
    key: str,
) -> tuple[np.ndarray, np.ndarray]:
    preds = _as_prediction_array(predictions, key=key)
    actual = _as_label_array(labels, key=key)
    if preds.shape[0] != actual.shape[0]:
        raise ContractViolation(
            "length_mismatch",
            key=key,
            detail=f"predictions ({preds.shape[0]}) vs labels ({actual.shape[0]})",
        )
    return preds, actual


def _is_scalar_pair(p: object, y: object) -> bool:
    return np.ndim(p) == 0 and np.ndim(y) == 0


def log_loss(p: Probability, y: Label) -> Union[float, np.ndarray]:
    """Binary log loss with ``p`` clamped to ``[EPSILON, 1 - EPSILON]``.

    Scalars in, float out; equal-length sequences in, per-element array out.
    """

    preds, actual = _paired(p, y, key="log_loss")
    clipped = np.clip(preds, EPSILON, 1.0 - EPSILON)
    losses = -(actual * np.log(clipped) + (1.0 - actual) * np.log(1.0 - clipped))
    if _is_scalar_pair(p, y):
        return float(losses[0])
    return losses


def brier(p: Probability, y: Label) -> Union[float, np.ndarray]:
    """Squared error between probability and outcome."""

    preds, actual = _paired(p, y, key="brier")
    scores = (preds - actual) ** 2
    if _is_scalar_pair(p, y):
        return float(scores[0])
    return scores


def mean_log_loss(predictions: Probability, labels: Label) -> float:
    preds, actual = _paired(predictions, labels, key="mean_log_loss")
    if preds.size == 0:
        return math.nan
    return float(np.mean(log_loss(preds, actual)))


def mean_brier(predictions: Probability, labels: Label) -> float:
    preds, actual = _paired(predictions, labels, key="mean_brier")
    if preds.size == 0:
        return math.nan
    return float(np.mean(brier(preds, actual)))


def calibration_slope(
    predictions: Probability,
    labels: Label,
    *,
    min_predictor_std: float = MIN_SLOPE_PREDICTOR_STD,
) -> float:
    """Least-squares slope of 0/1 outcomes regressed on predictions.

    Returns NaN with fewer than two points or when the predictions are (near)
    constant; 1.0 indicates perfect calibration.
    """

    preds, actual = _paired(predictions, labels, key="calibration_slope")
    if preds.size < 2:
        return math.nan

    x_centered = preds - preds.mean()
    denominator = float(np.sum(x_centered**2))
    if denominator == 0.0 or float(np.std(preds)) < min_predictor_std:
        return math.nan
    numerator = float(np.sum(x_centered * (actual - actual.mean())))
    return numerator / denominator


def expected_calibration_error(
    predictions: Probability,
    labels: Label,
    bins: int = ECE_BIN_COUNT,
) -> float:
    """Binned gap between mean predicted probability and observed frequency.

    Buckets are equal-width on ``[0, 1]``; a prediction of exactly 1.0 falls in
    the last bucket. Empty buckets contribute nothing.
    """

    if bins < 1:
        raise ContractViolation(
            "invalid_arena_policy",
            key="bins",
            detail="bins must be >= 1",
        )
    preds, actual = _paired(predictions, labels, key="expected_calibration_error")
    total = preds.size
    if total == 0:
        return math.nan

    bin_index = np.minimum(np.floor(preds * bins).astype(int), bins - 1)
    ece = 0.0
    for index in np.unique(bin_index):
        members = bin_index == index
        count = int(members.sum())
        gap = abs(float(preds[members].mean()) - float(actual[members].mean()))
        ece += (count / total) * gap
    return ece


def win_rate(predictions: Probability, labels: Label) -> float:
    """Share of rounds where ``p > 0.5`` agrees with the outcome."""

    preds, actual = _paired(predictions, labels, key="win_rate")
    if preds.size == 0:
        return math.nan
    called = preds > DECISION_THRESHOLD
    return float(np.mean(called == (actual == 1.0)))


def precision(predictions: Probability, labels: Label) -> float:
    """TP / (TP + FP) at the 0.5 decision threshold; NaN without positive calls."""

    preds, actual = _paired(predictions, labels, key="precision")
    called = preds > DECISION_THRESHOLD
    positives = int(called.sum())
    if positives == 0:
        return math.nan
    return float(np.sum(called & (actual == 1.0))) / positives


def confusion_rates(predictions: Probability, labels: Label) -> dict[str, float]:
    """True-positive, false-positive and false-negative rates at 0.5."""

    preds, actual = _paired(predictions, labels, key="confusion_rates")
    called = preds > DECISION_THRESHOLD
    is_true = actual == 1.0
    tp = int(np.sum(called & is_true))
    fp = int(np.sum(called & ~is_true))
    tn = int(np.sum(~called & ~is_true))
    fn = int(np.sum(~called & is_true))
    return {
        "tp_rate": tp / (tp + fn) if tp + fn else math.nan,
        "fp_rate": fp / (fp + tn) if fp + tn else math.nan,
        "fn_rate": fn / (tp + fn) if tp + fn else math.nan,
    }
