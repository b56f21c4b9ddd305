"""
Domain models — Pydantic types for plans, steps and run records.

All models are re-exported here for convenient access:

    from hostplan.core.models import Plan, StepSpec, StepKind, ExecutionRecord
"""

from hostplan.core.models.plan import Plan
from hostplan.core.models.record import (
    ApplyResult,
    ApplyStatus,
    ExecutionRecord,
    HostFact,
    ProbeResult,
    ProbeStatus,
    StepOutcome,
    StepState,
)
from hostplan.core.models.step import (
    AUTO_ROLLBACK,
    REQUIRED_PARAMS,
    FailurePolicy,
    StepKind,
    StepSpec,
)

__all__ = [
    "AUTO_ROLLBACK",
    "REQUIRED_PARAMS",
    "ApplyResult",
    "ApplyStatus",
    "ExecutionRecord",
    "FailurePolicy",
    "HostFact",
    # plan.py
    "Plan",
    "ProbeResult",
    "ProbeStatus",
    "StepKind",
    "StepOutcome",
    "StepSpec",
    "StepState",
]
