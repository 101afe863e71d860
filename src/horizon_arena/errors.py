"""Shared contract error types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ContractContext:
    """Structured context carried by contract violations."""

    reason_code: str
    round_index: Optional[int]
    key: str
    detail: str


class ContractViolation(ValueError):
    """Raised when a hard data or policy contract fails."""

    def __init__(
        self,
        reason_code: str,
        *,
        round_index: int | None = None,
        key: str = "<none>",
        detail: str = "",
    ) -> None:
        resolved_round = None if round_index is None else int(round_index)

        self.context = ContractContext(
            reason_code=reason_code,
            round_index=resolved_round,
            key=key,
            detail=detail,
        )
        round_str = "<none>" if resolved_round is None else str(resolved_round)
        message = (
            f"reason_code={reason_code}; round={round_str}; key={key}; detail={detail}"
        )
        super().__init__(message)
