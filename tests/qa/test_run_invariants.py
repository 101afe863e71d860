from __future__ import annotations

import json
from dataclasses import replace

import pytest

from horizon_arena.config import ArenaConfig, InvariantsConfig
from horizon_arena.data.history import RunHistory
from horizon_arena.evaluation.baselines import compute_horizon_diagnostics
from horizon_arena.horizons import HORIZONS, FailureType, Horizon
from horizon_arena.qa import assess_rankability, compute_run_invariants
from tests.helpers.arena_fixture import (
    alternating_labels,
    build_arena_history,
    build_history,
    skilled_series,
)


def test_model_sets_are_nested() -> None:
    invariants = compute_run_invariants(build_arena_history())

    assert invariants.evaluated_models == ("flat", "ghost", "good", "ok", "strong", "wrong")
    assert invariants.effective_models == ("flat", "good", "ok", "strong", "wrong")
    assert invariants.valid_models == ("good", "ok", "strong", "wrong")
    assert invariants.qualified_models == ("good", "ok", "strong")
    assert invariants.arena_eligible_models == ("good", "ok", "strong")

    chain = [
        invariants.evaluated_models,
        invariants.effective_models,
        invariants.valid_models,
        invariants.qualified_models,
        invariants.arena_eligible_models,
    ]
    for outer, inner in zip(chain, chain[1:]):
        assert set(inner) <= set(outer)
    for horizon in HORIZONS:
        assert set(invariants.arena_eligible_by_horizon[horizon]) <= set(
            invariants.qualified_by_horizon[horizon]
        )
        assert set(invariants.qualified_by_horizon[horizon]) <= set(
            invariants.valid_by_horizon[horizon]
        )


def test_per_model_invariants_tally_failures() -> None:
    invariants = compute_run_invariants(build_arena_history())
    ghost = invariants.models["ghost"]

    assert ghost.total_effective == 0
    assert ghost.total_failed == 12 * len(HORIZONS)
    assert ghost.failures_by_type["timeout"] == 12 * len(HORIZONS)
    assert ghost.failure_rate[Horizon.H1] == pytest.approx(1.0)
    assert invariants.models["strong"].overall_coverage == pytest.approx(1.0)


def test_is_qualified_lookup_and_rankability() -> None:
    invariants = compute_run_invariants(build_arena_history())

    assert invariants.is_qualified("strong", "1h")
    assert invariants.is_qualified("ok", Horizon.H24)
    assert not invariants.is_qualified("wrong", Horizon.H1)
    assert not invariants.is_qualified("flat", Horizon.H1)
    assert invariants.horizons[Horizon.H4].is_rankable
    assert invariants.horizons[Horizon.H4].minority_count == 6


def test_arena_requires_enough_effective_rounds_on_every_horizon() -> None:
    config = ArenaConfig.from_policy(
        {"invariants": {"min_effective_rounds_for_arena": 20}}
    )
    invariants = compute_run_invariants(build_arena_history(), config)

    assert invariants.qualified_models == ("good", "ok", "strong")
    assert invariants.arena_eligible_models == ()
    assert all(not invariants.arena_eligible_by_horizon[h] for h in HORIZONS)


def _short_on_24h_history() -> RunHistory:
    labels = alternating_labels(12)
    base = build_history(
        {
            "strong": skilled_series(labels, hit=0.8),
            "good": skilled_series(labels, hit=0.75),
            "ok": skilled_series(labels, hit=0.7),
        },
        labels,
    )
    outcomes = [
        replace(item, probability=None, failure=FailureType.TIMEOUT)
        if item.model_id == "strong"
        and item.horizon is Horizon.H24
        and item.round_index in (1, 5, 9)
        else item
        for item in base.iter_outcomes()
    ]
    return RunHistory.from_outcomes(outcomes)


def test_per_horizon_arena_uses_that_horizons_effective_rounds() -> None:
    invariants = compute_run_invariants(_short_on_24h_history())
    strong = invariants.models["strong"]

    assert strong.effective_n[Horizon.H1] == 12
    assert strong.effective_n[Horizon.H24] == 9
    assert invariants.qualified_by_horizon[Horizon.H1] == ("good", "ok", "strong")
    assert invariants.arena_eligible_by_horizon[Horizon.H1] == ("good", "ok", "strong")
    assert invariants.arena_eligible_by_horizon[Horizon.H24] == ("good", "ok")
    # run-level eligibility still needs every horizon
    assert invariants.arena_eligible_models == ("good", "ok")


def test_run_summary_counts_and_rankable_horizons() -> None:
    invariants = compute_run_invariants(build_arena_history())

    assert invariants.model_count == 6
    assert invariants.actual_rounds == 12
    assert invariants.rankable_horizons == HORIZONS
    assert invariants.non_rankable_horizons == ()

    skewed_labels = [True] * 10 + [False] * 2
    skewed = compute_run_invariants(
        build_history(
            {"a": skilled_series(skewed_labels, hit=0.7)},
            skewed_labels,
            horizons=(Horizon.H1,),
            intended_rounds=15,
        )
    )
    assert skewed.actual_rounds == 12
    assert skewed.intended_rounds == 15
    assert skewed.rankable_horizons == ()
    assert skewed.non_rankable_horizons == HORIZONS

    payload = skewed.as_dict()
    assert payload["model_count"] == 1
    assert payload["non_rankable_horizons"] == [h.value for h in HORIZONS]


def test_rankability_reasons() -> None:
    config = InvariantsConfig()
    skewed = compute_horizon_diagnostics(Horizon.H1, [True] * 9 + [False] * 3)
    assert assess_rankability(skewed, config) == (False, "minority count 3 < 5")

    lopsided = compute_horizon_diagnostics(Horizon.H1, [True] * 60 + [False] * 5)
    rankable, reason = assess_rankability(lopsided, config)
    assert not rankable
    assert reason.startswith("minority ratio")

    empty = compute_horizon_diagnostics(Horizon.H1, [])
    assert assess_rankability(empty, config) == (False, "no resolved labels")


def test_as_dict_is_json_serializable() -> None:
    payload = compute_run_invariants(build_arena_history()).as_dict()
    decoded = json.loads(json.dumps(payload, sort_keys=True))

    assert decoded["sets"]["arena_eligible"] == ["good", "ok", "strong"]
    assert set(decoded["by_horizon"]) == {h.value for h in HORIZONS}
    assert decoded["validity"]["flat"]["horizons"]["1h"]["violations"] == [
        "degenerate_predictor"
    ]
