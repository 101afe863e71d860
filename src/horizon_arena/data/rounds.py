"""Round collection: parallel model invocation with per-model failure isolation.

Each model is invoked with the same explicit :class:`RoundContext`. A model's
transport error, timeout, or malformed response is captured as a typed failure
on that model's result only; it never affects other models in the round.
Failed horizons carry no probability, so nothing downstream can score a
fabricated prediction.
"""

from __future__ import annotations

import json
import logging
import re
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

import requests

from horizon_arena.data.validators import coerce_probability
from horizon_arena.errors import ContractViolation
from horizon_arena.horizons import HORIZONS, FailureType, Horizon, parse_horizon

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\S\s]*?)```")


class ResponseParseError(ValueError):
    """Raised when a model response cannot be decoded."""


class ResponseSchemaError(ValueError):
    """Raised when a decoded model response has an invalid shape."""


@dataclass(frozen=True)
class RoundContext:
    """Explicit per-round inputs handed to every model invocation."""

    round_index: int
    as_of: Optional[datetime] = None
    horizons: tuple[Horizon, ...] = HORIZONS
    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))


ModelInvoker = Callable[[RoundContext], Mapping[Any, Any]]


@dataclass(frozen=True)
class ModelRoundResult:
    """One model's collected predictions and failures for a single round."""

    model_id: str
    probabilities: Mapping[Horizon, float]
    failures: Mapping[Horizon, FailureType]
    error: Optional[str] = None
    elapsed_seconds: Optional[float] = None

    @classmethod
    def failed(
        cls,
        model_id: str,
        failure: FailureType,
        *,
        horizons: tuple[Horizon, ...] = HORIZONS,
        error: str | None = None,
        elapsed_seconds: float | None = None,
    ) -> "ModelRoundResult":
        return cls(
            model_id=model_id,
            probabilities={},
            failures={horizon: failure for horizon in horizons},
            error=error,
            elapsed_seconds=elapsed_seconds,
        )

    @property
    def fully_failed(self) -> bool:
        return not self.probabilities


def classify_exception(exc: BaseException) -> FailureType:
    """Map an invocation exception onto the failure taxonomy."""

    if isinstance(exc, (TimeoutError, requests.Timeout)):
        return FailureType.TIMEOUT
    if isinstance(exc, (ResponseParseError, json.JSONDecodeError)):
        return FailureType.PARSE
    if isinstance(exc, (ResponseSchemaError, ContractViolation)):
        return FailureType.SCHEMA
    if isinstance(exc, (requests.RequestException, ConnectionError)):
        return FailureType.TRANSPORT
    return FailureType.OTHER


def _extract_probability(value: Any) -> Any:
    if isinstance(value, Mapping):
        if "probability" not in value:
            raise ResponseSchemaError("horizon entry is missing 'probability'")
        return value["probability"]
    return value


def parse_model_response(text: str) -> dict[Horizon, Any]:
    """Decode a JSON model response into raw per-horizon probabilities.

    Accepts a bare JSON object or one wrapped in a markdown code block. Values
    may be numbers or objects with a ``probability`` field. Unknown keys are
    ignored; range checks happen when the round is collected.
    """

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        match = _CODE_BLOCK.search(text)
        if match is None or not match.group(1).strip():
            raise ResponseParseError("response is not valid JSON") from None
        try:
            decoded = json.loads(match.group(1).strip())
        except json.JSONDecodeError as exc:
            raise ResponseParseError("fenced response is not valid JSON") from exc

    if not isinstance(decoded, dict):
        raise ResponseSchemaError("response must be a JSON object keyed by horizon")

    parsed: dict[Horizon, Any] = {}
    for key, value in decoded.items():
        try:
            horizon = parse_horizon(key)
        except ContractViolation:
            continue
        parsed[horizon] = _extract_probability(value)
    return parsed


def validate_prediction_payload(
    payload: object,
    *,
    horizons: tuple[Horizon, ...] = HORIZONS,
    round_index: int | None = None,
) -> tuple[dict[Horizon, float], dict[Horizon, FailureType]]:
    """Split a payload into valid probabilities and per-horizon schema failures."""

    if not isinstance(payload, Mapping):
        raise ResponseSchemaError(
            f"payload must be a mapping of horizon to probability, got {type(payload).__name__}"
        )

    normalized: dict[Horizon, Any] = {}
    for key, value in payload.items():
        try:
            normalized[parse_horizon(key)] = value
        except ContractViolation:
            continue

    probabilities: dict[Horizon, float] = {}
    failures: dict[Horizon, FailureType] = {}
    for horizon in horizons:
        if horizon not in normalized:
            failures[horizon] = FailureType.SCHEMA
            continue
        try:
            probabilities[horizon] = coerce_probability(
                _extract_probability(normalized[horizon]),
                key=horizon.value,
                round_index=round_index,
            )
        except (ContractViolation, ResponseSchemaError):
            failures[horizon] = FailureType.SCHEMA
    return probabilities, failures


def _invoke_timed(invoker: ModelInvoker, context: RoundContext) -> tuple[Any, float]:
    started = time.perf_counter()
    payload = invoker(context)
    return payload, time.perf_counter() - started


def _result_from_future(
    model_id: str,
    future: Future,
    context: RoundContext,
) -> ModelRoundResult:
    exc = future.exception()
    if exc is not None:
        failure = classify_exception(exc)
        logger.warning(
            "model %s failed round %d with %s: %s",
            model_id,
            context.round_index,
            failure.value,
            exc,
        )
        return ModelRoundResult.failed(
            model_id,
            failure,
            horizons=context.horizons,
            error=f"{type(exc).__name__}: {exc}",
        )

    payload, elapsed = future.result()
    try:
        probabilities, failures = validate_prediction_payload(
            payload,
            horizons=context.horizons,
            round_index=context.round_index,
        )
    except ResponseSchemaError as schema_exc:
        logger.warning(
            "model %s returned an invalid payload in round %d: %s",
            model_id,
            context.round_index,
            schema_exc,
        )
        return ModelRoundResult.failed(
            model_id,
            FailureType.SCHEMA,
            horizons=context.horizons,
            error=str(schema_exc),
            elapsed_seconds=elapsed,
        )

    if failures:
        logger.warning(
            "model %s had schema failures in round %d for horizons %s",
            model_id,
            context.round_index,
            ",".join(h.value for h in failures),
        )
    return ModelRoundResult(
        model_id=model_id,
        probabilities=probabilities,
        failures=failures,
        elapsed_seconds=elapsed,
    )


def collect_round(
    invokers: Mapping[str, ModelInvoker],
    context: RoundContext,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    max_workers: int | None = None,
) -> dict[str, ModelRoundResult]:
    """Invoke every model in parallel and collect isolated per-model results.

    Every model gets its own worker, so all of them share one deadline that
    starts together. Models still running when ``timeout_seconds`` elapses are
    recorded as ``timeout`` failures and their threads are abandoned, not
    joined. The interpreter still joins pool threads at exit, so invokers must
    bound their own I/O (e.g. pass ``timeout=`` to ``requests``).
    """

    if timeout_seconds <= 0:
        raise ContractViolation(
            "invalid_arena_policy",
            round_index=context.round_index,
            key="timeout_seconds",
            detail="timeout_seconds must be > 0",
        )
    if max_workers is not None and max_workers < len(invokers):
        raise ContractViolation(
            "invalid_arena_policy",
            round_index=context.round_index,
            key="max_workers",
            detail=f"max_workers must be >= number of invokers ({len(invokers)})",
        )
    if not invokers:
        return {}

    executor = ThreadPoolExecutor(
        max_workers=max_workers or len(invokers),
        thread_name_prefix=f"round-{context.round_index}",
    )
    try:
        futures = {
            model_id: executor.submit(_invoke_timed, invoker, context)
            for model_id, invoker in sorted(invokers.items())
        }
        _, pending = wait(futures.values(), timeout=timeout_seconds)

        results: dict[str, ModelRoundResult] = {}
        for model_id, future in futures.items():
            if future in pending:
                future.cancel()
                logger.warning(
                    "model %s timed out after %.1fs in round %d",
                    model_id,
                    timeout_seconds,
                    context.round_index,
                )
                results[model_id] = ModelRoundResult.failed(
                    model_id,
                    FailureType.TIMEOUT,
                    horizons=context.horizons,
                    error=f"no response within {timeout_seconds}s",
                )
                continue
            results[model_id] = _result_from_future(model_id, future, context)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    logger.info(
        "round %d collected: %d models, %d fully failed",
        context.round_index,
        len(results),
        sum(1 for result in results.values() if result.fully_failed),
    )
    return results
