"""Validity gating and run-level invariants for benchmark runs."""

from horizon_arena.qa.run_invariants import (
    HorizonInvariants,
    ModelInvariants,
    RunInvariants,
    assess_rankability,
    compute_run_invariants,
)
from horizon_arena.qa.validity_gate import (
    VALIDITY_RULES,
    GateMetrics,
    HorizonValidity,
    ValidityResult,
    evaluate_model_validity,
    evaluate_validity,
)

__all__ = [
    "GateMetrics",
    "HorizonInvariants",
    "HorizonValidity",
    "ModelInvariants",
    "RunInvariants",
    "VALIDITY_RULES",
    "ValidityResult",
    "assess_rankability",
    "compute_run_invariants",
    "evaluate_model_validity",
    "evaluate_validity",
]
