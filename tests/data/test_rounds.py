from __future__ import annotations

import json
import threading

import pytest
import requests

from horizon_arena.data.rounds import (
    ModelRoundResult,
    ResponseParseError,
    ResponseSchemaError,
    RoundContext,
    classify_exception,
    collect_round,
    parse_model_response,
    validate_prediction_payload,
)
from horizon_arena.errors import ContractViolation
from horizon_arena.horizons import HORIZONS, FailureType, Horizon


def _full_payload(p: float) -> dict[str, float]:
    return {h.value: p for h in HORIZONS}


def test_round_context_payload_is_read_only() -> None:
    context = RoundContext(round_index=2, payload={"market": "btc"})
    with pytest.raises(TypeError):
        context.payload["market"] = "eth"  # type: ignore[index]


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (TimeoutError("slow"), FailureType.TIMEOUT),
        (requests.Timeout("slow"), FailureType.TIMEOUT),
        (requests.ConnectionError("down"), FailureType.TRANSPORT),
        (ConnectionResetError("reset"), FailureType.TRANSPORT),
        (ResponseParseError("garbled"), FailureType.PARSE),
        (json.JSONDecodeError("bad", "{", 0), FailureType.PARSE),
        (ResponseSchemaError("shape"), FailureType.SCHEMA),
        (RuntimeError("boom"), FailureType.OTHER),
    ],
)
def test_classify_exception(exc: BaseException, expected: FailureType) -> None:
    assert classify_exception(exc) is expected


def test_parse_model_response_plain_and_fenced() -> None:
    plain = parse_model_response('{"15m": 0.4, "1h": {"probability": 0.6}, "note": "x"}')
    assert plain == {Horizon.M15: 0.4, Horizon.H1: 0.6}

    fenced = parse_model_response('Here you go:\n```json\n{"4h": 0.7}\n```')
    assert fenced == {Horizon.H4: 0.7}


def test_parse_model_response_errors() -> None:
    with pytest.raises(ResponseParseError):
        parse_model_response("no json here")
    with pytest.raises(ResponseSchemaError):
        parse_model_response("[0.1, 0.2]")
    with pytest.raises(ResponseSchemaError):
        parse_model_response('{"1h": {"p": 0.2}}')


def test_validate_prediction_payload_fails_bad_horizons_only() -> None:
    probabilities, failures = validate_prediction_payload(
        {"15m": 0.2, "1h": 1.7, "4h": "0.5"}
    )
    assert probabilities == {Horizon.M15: 0.2, Horizon.H4: 0.5}
    assert failures == {Horizon.H1: FailureType.SCHEMA, Horizon.H24: FailureType.SCHEMA}

    with pytest.raises(ResponseSchemaError):
        validate_prediction_payload([0.2])


def test_collect_round_isolates_failures() -> None:
    seen: list[int] = []

    def good(context: RoundContext) -> dict[str, float]:
        seen.append(context.round_index)
        return _full_payload(0.65)

    def broken(context: RoundContext) -> dict[str, float]:
        raise requests.ConnectionError("refused")

    def partial(context: RoundContext) -> dict[str, float]:
        return {"15m": 0.3, "1h": -0.2}

    def garbage(context: RoundContext) -> str:
        return "not a mapping"

    results = collect_round(
        {"good": good, "broken": broken, "partial": partial, "garbage": garbage},
        RoundContext(round_index=7),
        timeout_seconds=5.0,
    )

    assert seen == [7]
    assert sorted(results) == ["broken", "garbage", "good", "partial"]
    assert results["good"].probabilities == {h: 0.65 for h in HORIZONS}
    assert not results["good"].failures
    assert results["broken"].fully_failed
    assert set(results["broken"].failures.values()) == {FailureType.TRANSPORT}
    assert "ConnectionError" in (results["broken"].error or "")
    assert results["partial"].probabilities == {Horizon.M15: 0.3}
    assert results["partial"].failures[Horizon.H1] is FailureType.SCHEMA
    assert set(results["garbage"].failures.values()) == {FailureType.SCHEMA}


def test_collect_round_marks_slow_models_as_timeout() -> None:
    release = threading.Event()

    def slow(context: RoundContext) -> dict[str, float]:
        release.wait(5.0)
        return _full_payload(0.5)

    def fast(context: RoundContext) -> dict[str, float]:
        return _full_payload(0.4)

    try:
        results = collect_round(
            {"slow": slow, "fast": fast},
            RoundContext(round_index=0),
            timeout_seconds=0.2,
        )
    finally:
        release.set()

    assert set(results["slow"].failures.values()) == {FailureType.TIMEOUT}
    assert results["slow"].probabilities == {}
    assert results["fast"].probabilities[Horizon.H24] == pytest.approx(0.4)


def test_collect_round_rejects_non_positive_timeout() -> None:
    with pytest.raises(ContractViolation, match="invalid_arena_policy"):
        collect_round({}, RoundContext(round_index=0), timeout_seconds=0)


def test_collect_round_rejects_pool_smaller_than_model_count() -> None:
    invokers = {"a": lambda context: {}, "b": lambda context: {}}
    with pytest.raises(ContractViolation, match="key=max_workers"):
        collect_round(invokers, RoundContext(round_index=3), max_workers=1)


def test_failed_result_covers_every_horizon() -> None:
    result = ModelRoundResult.failed("m", FailureType.PARSE, error="bad json")
    assert set(result.failures) == set(HORIZONS)
    assert result.fully_failed
