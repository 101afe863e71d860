from __future__ import annotations

import math

import pandas as pd
import pytest

from horizon_arena.data.history import HISTORY_COLUMNS, RoundOutcome, RunHistory
from horizon_arena.data.rounds import ModelRoundResult
from horizon_arena.errors import ContractViolation
from horizon_arena.horizons import FailureType, Horizon


def _outcome(
    round_index: int,
    model_id: str = "alpha",
    horizon: Horizon = Horizon.H1,
    probability: float | None = 0.6,
    label: bool | None = True,
    failure: FailureType | None = None,
) -> RoundOutcome:
    return RoundOutcome(
        round_index=round_index,
        model_id=model_id,
        horizon=horizon,
        probability=probability,
        label=label,
        failure=failure,
    )


def test_round_outcome_normalizes_fields() -> None:
    outcome = RoundOutcome(
        round_index=3.0,
        model_id=" alpha ",
        horizon="4h",
        probability="0.25",
        label="false",
    )
    assert outcome.round_index == 3
    assert outcome.model_id == "alpha"
    assert outcome.horizon is Horizon.H4
    assert outcome.probability == pytest.approx(0.25)
    assert outcome.label is False
    assert outcome.is_scored
    assert outcome.loss == pytest.approx(-math.log(0.75))


def test_round_outcome_contracts() -> None:
    with pytest.raises(ContractViolation, match="invalid_outcome"):
        _outcome(0, probability=None)
    with pytest.raises(ContractViolation, match="invalid_outcome"):
        _outcome(0, probability=0.4, failure=FailureType.PARSE)
    with pytest.raises(ContractViolation, match="invalid_probability"):
        _outcome(0, probability=1.5)
    with pytest.raises(ContractViolation, match="unknown_horizon"):
        _outcome(0, horizon="2h")
    with pytest.raises(ContractViolation, match="invalid_outcome"):
        _outcome(-1)


def test_failed_and_unresolved_outcomes_are_not_scored() -> None:
    failed = _outcome(0, probability=None, failure=FailureType.TIMEOUT)
    unresolved = _outcome(1, label=None)
    assert failed.failed and not failed.is_scored
    assert not unresolved.failed and not unresolved.is_scored
    assert unresolved.loss is None


def test_run_history_rejects_duplicates_order_and_label_conflicts() -> None:
    history = RunHistory()
    history.record(_outcome(1))

    with pytest.raises(ContractViolation, match="duplicate_outcome"):
        history.record(_outcome(1, probability=0.2))
    with pytest.raises(ContractViolation, match="out_of_order_round"):
        history.record(_outcome(0))
    with pytest.raises(ContractViolation, match="label_conflict"):
        history.record(_outcome(1, model_id="beta", label=False))

    history.record(_outcome(1, model_id="beta", label=True))
    assert len(history) == 2


def test_model_history_view_is_chronological() -> None:
    outcomes = [
        _outcome(2, probability=0.7, label=False),
        _outcome(0, probability=0.8, label=True),
        _outcome(1, probability=None, label=True, failure=FailureType.PARSE),
        _outcome(3, probability=0.4, label=None),
    ]
    history = RunHistory.from_outcomes(outcomes)
    view = history.view("alpha")

    assert [o.round_index for o in view.outcomes(Horizon.H1)] == [0, 1, 2, 3]
    assert view.predictions(Horizon.H1).tolist() == [0.8, 0.7]
    assert view.labels(Horizon.H1).tolist() == [True, False]
    assert view.effective_rounds(Horizon.H1) == 2
    assert view.failed_rounds(Horizon.H1) == 1
    assert view.failures_by_type()[FailureType.PARSE] == 1
    assert view.log_losses(Horizon.H1)[1] == pytest.approx(-math.log(0.3))
    assert view.outcome_at(Horizon.H1, 2).probability == pytest.approx(0.7)
    assert view.outcome_at(Horizon.H24, 2) is None
    assert view.effective_rounds(Horizon.M15) == 0
    assert history.intended_rounds == 4


def test_unknown_model_view_raises() -> None:
    history = RunHistory.from_outcomes([_outcome(0)])
    with pytest.raises(ContractViolation, match="unknown_model"):
        history.view("gamma")


def test_record_round_converts_collected_results() -> None:
    history = RunHistory(intended_rounds=10)
    results = {
        "beta": ModelRoundResult(
            model_id="beta",
            probabilities={Horizon.M15: 0.3, Horizon.H1: 0.6},
            failures={Horizon.H4: FailureType.SCHEMA, Horizon.H24: FailureType.SCHEMA},
        ),
        "alpha": ModelRoundResult.failed("alpha", FailureType.TRANSPORT),
    }

    recorded = history.record_round(0, results, {"15m": True, Horizon.H1: False})

    assert len(recorded) == 8
    assert history.model_ids == ("alpha", "beta")
    assert history.intended_rounds == 10
    assert history.label_for(0, Horizon.M15) is True
    assert history.label_for(0, "4h") is None
    beta = history.view("beta")
    assert beta.effective_rounds(Horizon.M15) == 1
    assert beta.failed_rounds(Horizon.H4) == 1
    assert history.view("alpha").failures_by_type()[FailureType.TRANSPORT] == 4


def test_labels_by_horizon_one_label_per_round() -> None:
    history = RunHistory.from_outcomes(
        [
            _outcome(0, model_id="alpha", label=True),
            _outcome(0, model_id="beta", label=True),
            _outcome(1, model_id="alpha", label=False),
            _outcome(2, model_id="alpha", label=None),
        ]
    )
    labels = history.labels_by_horizon()
    assert labels[Horizon.H1] == ((0, True), (1, False))
    assert labels[Horizon.H24] == ()


def test_frame_round_trip_preserves_outcomes() -> None:
    frame = pd.DataFrame(
        {
            "round": [1, 0, 0, 1],
            "model_id": ["alpha", "alpha", "beta", "beta"],
            "horizon": ["1h", "1h", "1h", "1h"],
            "probability": [0.4, 0.7, None, 0.55],
            "label": [False, True, True, False],
            "failure_type": [None, None, "timeout", None],
        }
    )

    history = RunHistory.from_frame(frame)
    exported = history.to_frame()

    assert list(exported.columns) == list(HISTORY_COLUMNS)
    assert exported["round"].tolist() == [0, 0, 1, 1]
    assert exported["model_id"].tolist() == ["alpha", "beta", "alpha", "beta"]
    assert exported["failure_type"].isna().tolist() == [True, False, True, True]
    assert exported["failure_type"].iloc[1] == "timeout"

    reloaded = RunHistory.from_frame(exported)
    pd.testing.assert_frame_equal(reloaded.to_frame(), exported)


def test_from_frame_requires_columns() -> None:
    frame = pd.DataFrame({"round": [0], "model_id": ["alpha"], "horizon": ["1h"]})
    with pytest.raises(ContractViolation, match="missing_column"):
        RunHistory.from_frame(frame)
