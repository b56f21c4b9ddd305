"""
Probe results, apply results and execution records — the run contract.

The prober returns a ProbeResult, the executor returns an ApplyResult,
and the runner turns both into ExecutionRecords for the checkpoint
log. Like the adapter receipts they are modeled on, these carry
failures as data: step-level problems never travel as exceptions.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class StepState(str, Enum):
    """Per-step states of the runner state machine."""

    PENDING = "pending"
    PROBING = "probing"
    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    BLOCKED = "blocked"
    PLANNED = "planned"         # dry-run: would apply

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL

    @property
    def success(self) -> bool:
        return self in (StepState.SATISFIED, StepState.APPLIED)


_TERMINAL = frozenset({StepState.SATISFIED, StepState.APPLIED, StepState.FAILED,
                       StepState.BLOCKED, StepState.PLANNED})


class StepOutcome(str, Enum):
    """Outcomes written to the checkpoint log."""

    SATISFIED = "satisfied"
    APPLIED = "applied"
    FAILED = "failed"
    BLOCKED = "blocked"
    PLANNED = "planned"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    ROLLBACK_SKIPPED = "rollback_skipped"


class HostFact(BaseModel):
    """A read-only observation made while probing. Never persisted."""

    subject: str                    # package name, path, rule, service…
    fact: str                       # installed, sha256, status…
    value: Any = None


class ProbeStatus(str, Enum):
    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"
    ERROR = "error"


class ProbeResult(BaseModel):
    """Whether a step's desired state already holds."""

    status: ProbeStatus
    detail: str = ""
    facts: list[HostFact] = Field(default_factory=list)
    timed_out: bool = False

    @property
    def satisfied(self) -> bool:
        return self.status is ProbeStatus.SATISFIED

    @property
    def error(self) -> bool:
        return self.status is ProbeStatus.ERROR

    @classmethod
    def holds(cls, detail: str = "", facts: list[HostFact] | None = None) -> ProbeResult:
        return cls(status=ProbeStatus.SATISFIED, detail=detail, facts=facts or [])

    @classmethod
    def drifted(cls, detail: str = "", facts: list[HostFact] | None = None) -> ProbeResult:
        return cls(status=ProbeStatus.UNSATISFIED, detail=detail, facts=facts or [])

    @classmethod
    def failure(cls, detail: str, timed_out: bool = False) -> ProbeResult:
        return cls(status=ProbeStatus.ERROR, detail=detail, timed_out=timed_out)


class ApplyStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"


class ApplyResult(BaseModel):
    """Outcome of one executor call.

    ``undo`` holds whatever the executor captured before mutating
    (previous file content, packages that were actually missing) so
    an automatic rollback can restore the prior state. It lives in
    memory for the run only and is never written to the checkpoint log.
    """

    status: ApplyStatus
    output: str = ""
    reason: str = ""
    timed_out: bool = False
    undo: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @property
    def ok(self) -> bool:
        return self.status is ApplyStatus.APPLIED

    @classmethod
    def applied(cls, output: str = "", undo: dict[str, Any] | None = None) -> ApplyResult:
        return cls(status=ApplyStatus.APPLIED, output=output, undo=undo or {})

    @classmethod
    def failed(cls, reason: str, timed_out: bool = False, output: str = "") -> ApplyResult:
        return cls(status=ApplyStatus.FAILED, reason=reason, timed_out=timed_out, output=output)


class ExecutionRecord(BaseModel):
    """One checkpoint log entry. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    step_id: str
    kind: str = ""
    outcome: StepOutcome
    timestamp: str = Field(default_factory=_now_iso)
    detail: str = ""
    duration_ms: int = 0
