from __future__ import annotations

import pytest

from horizon_arena.config import StabilityConfig
from horizon_arena.evaluation.stability import (
    StabilityResult,
    StabilityScore,
    rolling_window_means,
    score_cohort,
    summarize_windows,
)
from horizon_arena.horizons import HORIZONS, Horizon, per_horizon

_W2 = StabilityConfig(window_size=2)


def _flagged(model_id: str, horizon: Horizon, flags: tuple[str, ...]) -> StabilityScore:
    return StabilityScore(
        model_id=model_id,
        horizon=horizon,
        best_window=0.2,
        worst_window=0.4,
        variance=0.01,
        regret=1.0,
        flags=flags,
    )


def test_rolling_window_means() -> None:
    assert rolling_window_means([1.0, 2.0, 3.0, 4.0], 2).tolist() == pytest.approx(
        [1.5, 2.5, 3.5]
    )
    assert rolling_window_means([1.0, 2.0], 3).size == 0


def test_summarize_windows_uses_population_variance() -> None:
    best, worst, variance = summarize_windows([0.1, 0.5, 0.9, 0.1], 2)
    assert best == pytest.approx(0.3)
    assert worst == pytest.approx(0.7)
    assert variance == pytest.approx(0.08 / 3)
    assert summarize_windows([0.1] * 5, 6) is None


def test_regret_flags_worst_window_far_above_cohort_median() -> None:
    scores = score_cohort(
        Horizon.H1,
        {
            "a": [0.2, 0.2, 0.4, 0.4],
            "b": [0.3, 0.3, 0.5, 0.5],
            "c": [1.0, 1.0, 1.2, 1.2],
        },
        _W2,
    )
    assert scores["a"].regret == pytest.approx(0.8)
    assert scores["c"].regret == pytest.approx(2.4)
    assert scores["c"].flags == ("regret",)
    assert not scores["a"].flagged
    assert not scores["b"].flagged


def test_variance_flag_relative_to_cohort_median() -> None:
    scores = score_cohort(
        Horizon.H1,
        {
            "a": [0.2, 0.2, 0.4, 0.4],
            "b": [0.3, 0.3, 0.5, 0.5],
            "d": [0.1, 0.1, 0.9, 0.1],
        },
        _W2,
    )
    assert scores["d"].regret == pytest.approx(1.0)
    assert scores["d"].flags == ("variance",)
    assert not scores["a"].flagged


def test_short_sequences_get_no_score() -> None:
    scores = score_cohort(
        Horizon.H4, {"a": [0.2] * 6, "short": [0.9] * 5}, StabilityConfig()
    )
    assert set(scores) == {"a"}
    assert not scores["a"].flagged


def test_zero_median_worst_gives_unit_regret() -> None:
    scores = score_cohort(Horizon.H1, {"a": [0.0, 0.0], "b": [0.0, 0.0]}, _W2)
    assert scores["a"].regret == pytest.approx(1.0)


def test_elimination_needs_a_majority_of_horizons() -> None:
    flagged_on = {
        "often": {Horizon.M15, Horizon.H1, Horizon.H4},
        "sometimes": {Horizon.M15, Horizon.H1},
    }
    result = StabilityResult(
        window_size=6,
        scores=per_horizon(
            lambda h: {
                model_id: _flagged(model_id, h, ("regret",) if h in horizons else ())
                for model_id, horizons in flagged_on.items()
            }
        ),
    )

    assert result.eliminated == ("often",)
    assert result.flagged_horizons("sometimes") == (Horizon.M15, Horizon.H1)
    assert result.narrow(Horizon.H1, ["often", "sometimes", "clean"]) == ("clean",)
    assert result.narrow(Horizon.H24, ["often", "sometimes"]) == ("sometimes",)
    assert set(result.as_dict()["scores"]) == {h.value for h in HORIZONS}
