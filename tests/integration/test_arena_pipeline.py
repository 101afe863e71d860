"""End-to-end run: collect rounds from live invokers, then evaluate the run."""

from __future__ import annotations

import math
from pathlib import Path

import pytest
import requests

from horizon_arena.data.history import RunHistory
from horizon_arena.data.rounds import RoundContext
from horizon_arena.errors import ContractViolation
from horizon_arena.horizons import HORIZONS, FailureType, Horizon
from horizon_arena.pipeline import evaluate_run, run_round
from horizon_arena.reporting.exporters import export_run_report


def _label(round_index: int) -> bool:
    return round_index % 2 == 0


def _skilled(hit: float):
    def invoke(context: RoundContext) -> dict[str, float]:
        p = hit if _label(context.round_index) else 1.0 - hit
        return {h.value: p for h in context.horizons}

    return invoke


def _unreachable(context: RoundContext) -> dict[str, float]:
    raise requests.ConnectionError("endpoint down")


def _partial(context: RoundContext) -> dict[str, float]:
    p = 0.8 if _label(context.round_index) else 0.2
    return {"15m": p, "1h": p, "4h": p}


def _collect(n_rounds: int = 12) -> RunHistory:
    history = RunHistory(intended_rounds=n_rounds)
    invokers = {
        "strong": _skilled(0.8),
        "good": _skilled(0.75),
        "ok": _skilled(0.7),
        "partial": _partial,
        "down": _unreachable,
    }
    for round_index in range(n_rounds):
        context = RoundContext(round_index=round_index)
        labels = {h: _label(round_index) for h in HORIZONS}
        run_round(history, invokers, context, labels, timeout_seconds=5.0)
    return history


def test_run_round_records_failures_per_horizon() -> None:
    history = _collect(2)

    down = history.view("down")
    assert down.effective_rounds(Horizon.H1) == 0
    assert down.failures_by_type()[FailureType.TRANSPORT] == 2 * len(HORIZONS)

    partial = history.view("partial")
    assert partial.effective_rounds(Horizon.H4) == 2
    assert partial.failures_by_type(Horizon.H24)[FailureType.SCHEMA] == 2
    assert history.label_for(1, Horizon.H1) is False


def test_evaluate_run_end_to_end(tmp_path: Path) -> None:
    report = evaluate_run(_collect())
    invariants = report.invariants

    assert invariants.evaluated_models == ("down", "good", "ok", "partial", "strong")
    assert "down" not in invariants.effective_models
    # partial never answers 24h, so it cannot be valid or ranked there
    assert "partial" not in invariants.valid_by_horizon[Horizon.H24]
    assert "partial" in invariants.qualified_by_horizon[Horizon.H1]
    assert "partial" not in invariants.arena_eligible_models
    assert invariants.arena_eligible_models == ("good", "ok", "strong")

    h1 = report.ensemble_performance[Horizon.H1]
    assert h1.n_rounds == 12
    assert h1.n_unscoreable == 0
    assert h1.mean_log_loss is not None and h1.mean_log_loss < math.log(2.0)

    # the ensemble weighs its best member most once history accumulates
    last = [r for r in report.ensemble if r.horizon is Horizon.H1][-1]
    assert max(last.weights, key=last.weights.get) in {"partial", "strong"}
    assert last.weights["strong"] > last.weights["ok"]

    payload = report.as_dict()
    assert payload["ensemble_performance"]["1h"]["n_scored"] == 12

    frame = report.scorecard_frame()
    assert len(frame) == 5 * len(HORIZONS)

    paths = export_run_report(report, tmp_path)
    assert paths["leaderboard_1h"].exists()


def test_run_round_rejects_non_positive_timeout() -> None:
    with pytest.raises(ContractViolation, match="invalid_arena_policy"):
        run_round(
            RunHistory(),
            {"strong": _skilled(0.8)},
            RoundContext(round_index=0),
            timeout_seconds=0,
        )
