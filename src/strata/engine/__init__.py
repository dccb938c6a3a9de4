"""Convergence engine and run orchestration."""

from strata.engine.convergence import (
    KNOWN_AFTER_APPLY,
    ConvergenceEngine,
    Outcome,
    RetryPolicy,
    diff_attributes,
)
from strata.engine.results import Action, Change, DriftRecord, NodeResult, RunReport
from strata.engine.runner import Runner, new_run_id, state_levels

__all__ = [
    "KNOWN_AFTER_APPLY",
    "Action",
    "Change",
    "ConvergenceEngine",
    "DriftRecord",
    "NodeResult",
    "Outcome",
    "RetryPolicy",
    "Runner",
    "RunReport",
    "diff_attributes",
    "new_run_id",
    "state_levels",
]
