"""
Plan runner — the central orchestration loop.

The runner walks a validated plan in dependency order. For each ready
step it probes the host, applies the step only when the probe says the
desired state does not hold, records the terminal outcome in the
checkpoint log and then decides, from the failure policy, whether the
run goes on.

Flow:
    lock → for each step: probe → (unsatisfied) apply → checkpoint → policy
         → (abort / cancel) rollback in reverse checkpoint order → audit

Each step is attempted at most once per run. The runner is the only
place that decides abort, continue or rollback; the prober and executor
hand failures back as data.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from hostplan.adapters.registry import CollaboratorRegistry
from hostplan.adapters.shell.command import step_deadline
from hostplan.core.engine import executor, prober
from hostplan.core.engine.context import HostContext
from hostplan.core.errors import RollbackFailed
from hostplan.core.models.plan import Plan
from hostplan.core.models.record import (
    ExecutionRecord,
    HostFact,
    StepOutcome,
    StepState,
)
from hostplan.core.models.step import FailurePolicy, StepSpec
from hostplan.core.persistence.audit import AuditEntry, AuditWriter
from hostplan.core.persistence.checkpoint import CheckpointLog
from hostplan.core.persistence.run_lock import RunLock

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT = 600.0
LOCK_FILE = "hostplan.lock"


@dataclass
class StepReport:
    """Final state of one step."""

    step_id: str
    kind: str
    state: StepState = StepState.PENDING
    detail: str = ""
    duration_ms: int = 0
    facts: list[HostFact] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "kind": self.kind,
            "state": self.state.value,
            "detail": self.detail,
            "duration_ms": self.duration_ms,
        }


@dataclass
class RollbackReport:
    """One entry of the unwind list."""

    step_id: str
    outcome: StepOutcome
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is not StepOutcome.ROLLBACK_FAILED

    def to_dict(self) -> dict[str, Any]:
        return {"step_id": self.step_id, "outcome": self.outcome.value, "detail": self.detail}


@dataclass
class RunReport:
    """Result of one run of a plan."""

    run_id: str = ""
    plan: str = ""
    dry_run: bool = False
    steps: list[StepReport] = field(default_factory=list)
    rollbacks: list[RollbackReport] = field(default_factory=list)
    cancelled: bool = False
    aborted: bool = False
    duration_ms: int = 0
    checkpoint: str | None = None

    @property
    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for step in self.steps:
            counts[step.state.value] = counts.get(step.state.value, 0) + 1
        return counts

    @property
    def failed(self) -> list[StepReport]:
        return [s for s in self.steps if s.state is StepState.FAILED]

    @property
    def applied(self) -> list[StepReport]:
        return [s for s in self.steps if s.state is StepState.APPLIED]

    @property
    def all_ok(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def exit_code(self) -> int:
        return 0 if self.all_ok else 1

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        return "ok" if self.all_ok else "failed"

    def get(self, step_id: str) -> StepReport | None:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def state_of(self, step_id: str) -> StepState | None:
        step = self.get(step_id)
        return step.state if step else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "plan": self.plan,
            "dry_run": self.dry_run,
            "status": self.status,
            "exit_code": self.exit_code,
            "cancelled": self.cancelled,
            "aborted": self.aborted,
            "counts": self.counts,
            "duration_ms": self.duration_ms,
            "checkpoint": self.checkpoint,
            "steps": [s.to_dict() for s in self.steps],
            "rollbacks": [r.to_dict() for r in self.rollbacks],
        }


class PlanRunner:
    """Runs one plan against one host, once.

    Args:
        plan: A validated plan, variables already bound.
        registry: Collaborators for the target host.
        state_dir: Root for checkpoint logs, the lock and the audit ledger.
        run_id: Identifier for this run (generated when omitted).
        dry_run: Probe only; never apply, lock, persist or roll back.
        on_failure: Run-wide policy override (step overrides still win).
        default_timeout: Per-step deadline when a step declares none.
        lock: Run lock to hold for the duration of the run.
        audit_writer: Ledger that receives the run summary.
        on_step: Called with each step's report as it reaches its
            final state.
    """

    def __init__(
        self,
        plan: Plan,
        registry: CollaboratorRegistry,
        *,
        state_dir: Path,
        run_id: str | None = None,
        dry_run: bool = False,
        on_failure: FailurePolicy | None = None,
        default_timeout: float = DEFAULT_STEP_TIMEOUT,
        lock: RunLock | None = None,
        audit_writer: AuditWriter | None = None,
        on_step: Callable[[StepReport], None] | None = None,
    ):
        self.plan = plan
        self.state_dir = Path(state_dir)
        self.run_id = run_id or generate_run_id()
        self.dry_run = dry_run
        self.on_failure = on_failure
        self.default_timeout = default_timeout
        self.lock = lock or RunLock(self.state_dir / LOCK_FILE, self.run_id)
        self.audit_writer = audit_writer or AuditWriter(state_dir=self.state_dir)
        self.on_step = on_step
        self.host = HostContext(
            registry=registry,
            variables=plan.variables,
            secret_values=tuple(plan.secret_values()),
        )
        self._cancel = threading.Event()
        self._undo: dict[str, dict[str, Any]] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Request cancellation. The step in flight finishes first."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested, finishing current step")
        self._cancel.set()

    def run(self) -> RunReport:
        """Execute the plan.

        Raises:
            ConcurrentRunDetected: Another run holds the lock. Raised
                before any probe or mutation.
        """
        if self.dry_run:
            with self._signals():
                return self._execute(CheckpointLog())

        with self.lock:
            log = CheckpointLog.for_run(self.state_dir, self.run_id)
            with self._signals():
                report = self._execute(log)
        self._write_audit(report)
        return report

    # ── Main loop ───────────────────────────────────────────────

    def _execute(self, log: CheckpointLog) -> RunReport:
        started = time.monotonic()
        report = RunReport(
            run_id=self.run_id,
            plan=self.plan.name,
            dry_run=self.dry_run,
            checkpoint=str(log.path) if log.path else None,
        )
        logger.info(
            "Run %s: plan '%s' (%d steps)%s",
            self.run_id, self.plan.name, len(self.plan.steps), " [dry-run]" if self.dry_run else "",
        )

        states: dict[str, StepState] = {}
        halt_reason = ""

        for step in self.plan.ordered_steps():
            if not halt_reason and self.cancelled:
                halt_reason = "run cancelled"
                report.cancelled = True

            if halt_reason:
                entry = StepReport(step.id, step.kind.value, StepState.BLOCKED, halt_reason)
            else:
                blockers = sorted(
                    d for d in step.depends_on
                    if states[d] in (StepState.FAILED, StepState.BLOCKED)
                )
                if blockers:
                    entry = StepReport(
                        step.id, step.kind.value, StepState.BLOCKED,
                        f"dependency not met: {', '.join(blockers)}",
                    )
                else:
                    pending = sorted(d for d in step.depends_on if states[d] is StepState.PLANNED)
                    entry = self._run_step(step, pending)

            states[step.id] = entry.state
            self._finish(entry, log, report)

            if entry.state is StepState.FAILED and not halt_reason:
                if self.plan.policy_for(step, self.on_failure) is FailurePolicy.ABORT:
                    halt_reason = f"run aborted after '{step.id}' failed"
                    report.aborted = True
                    logger.warning("✗ %s failed, aborting", step.label())
            elif entry.state is StepState.BLOCKED and self.cancelled and not report.cancelled:
                halt_reason = "run cancelled"
                report.cancelled = True

        if self.cancelled:
            report.cancelled = True
        if (report.aborted or report.cancelled) and not self.dry_run:
            report.rollbacks = self._rollback(log)

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Run %s finished: %s %s", self.run_id, report.status, report.counts)
        return report

    def _run_step(self, step: StepSpec, pending_deps: list[str]) -> StepReport:
        """Probe, then apply if needed. Never raises for step-level failures."""
        entry = StepReport(step.id, step.kind.value, StepState.PROBING)
        started = time.monotonic()

        with step_deadline(step.timeout or self.default_timeout):
            result = prober.probe(step, self.host)
            entry.facts = result.facts

            if result.satisfied:
                entry.state, entry.detail = StepState.SATISFIED, result.detail
            elif pending_deps:
                # Dependencies would have been applied first.
                entry.state = StepState.PLANNED
                entry.detail = f"would apply after {', '.join(pending_deps)}"
            elif result.error:
                entry.state = StepState.FAILED
                entry.detail = result.detail if result.timed_out else f"probe failed: {result.detail}"
            elif self.dry_run:
                entry.state, entry.detail = StepState.PLANNED, f"would apply: {result.detail}"
            elif self.cancelled:
                entry.state, entry.detail = StepState.BLOCKED, "run cancelled before apply"
            else:
                entry.state = StepState.APPLYING
                logger.info("→ applying %s (%s)", step.label(), result.detail)
                applied = executor.apply(step, self.host)
                if applied.ok:
                    entry.state, entry.detail = StepState.APPLIED, result.detail
                    self.host.applied_steps.add(step.id)
                    self._undo[step.id] = applied.undo
                else:
                    entry.state, entry.detail = StepState.FAILED, applied.reason

        entry.duration_ms = int((time.monotonic() - started) * 1000)
        return entry

    def _finish(self, entry: StepReport, log: CheckpointLog, report: RunReport) -> None:
        entry.detail = self.host.redact(entry.detail)
        log.append(ExecutionRecord(
            run_id=self.run_id,
            step_id=entry.step_id,
            kind=entry.kind,
            outcome=StepOutcome(entry.state.value),
            detail=entry.detail,
            duration_ms=entry.duration_ms,
        ))
        report.steps.append(entry)
        logger.info("%s %s → %s", _marker(entry.state), entry.step_id, entry.state.value)
        if self.on_step is not None:
            self.on_step(entry)

    # ── Rollback ────────────────────────────────────────────────

    def _rollback(self, log: CheckpointLog) -> list[RollbackReport]:
        """Undo applied steps, newest first. Best effort: never stops early."""
        rollbacks = []
        for record in log.applied_in_reverse():
            step = self.plan.get_step(record.step_id)
            if step is None:
                continue

            if step.rollback is None:
                outcome, detail = StepOutcome.ROLLBACK_SKIPPED, "no rollback declared; left as-is"
            else:
                try:
                    outcome = StepOutcome.ROLLED_BACK
                    detail = executor.revert(step, self.host, self._undo.get(step.id, {}))
                except RollbackFailed as e:
                    outcome, detail = StepOutcome.ROLLBACK_FAILED, e.reason
                    logger.error("✗ %s", e)

            detail = self.host.redact(detail)
            log.append(ExecutionRecord(
                run_id=self.run_id, step_id=step.id, kind=step.kind.value,
                outcome=outcome, detail=detail,
            ))
            rollbacks.append(RollbackReport(step.id, outcome, detail))
            logger.info("↩ %s → %s (%s)", step.id, outcome.value, detail)
        return rollbacks

    # ── Helpers ─────────────────────────────────────────────────

    @contextmanager
    def _signals(self) -> Iterator[None]:
        """Route SIGINT/SIGTERM to ``cancel`` for the duration of the run."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def handler(signum, frame):
            logger.warning("Received %s", signal.Signals(signum).name)
            self.cancel()

        previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            yield
        finally:
            for sig, old in previous.items():
                signal.signal(sig, old)

    def _write_audit(self, report: RunReport) -> None:
        self.audit_writer.write(AuditEntry(
            run_id=report.run_id,
            plan=report.plan,
            status=report.status,
            steps_total=len(report.steps),
            counts=report.counts,
            rolled_back=[r.step_id for r in report.rollbacks if r.outcome is StepOutcome.ROLLED_BACK],
            duration_ms=report.duration_ms,
            errors=[f"{s.step_id}: {s.detail}" for s in report.failed],
        ))


def _marker(state: StepState) -> str:
    if state.success:
        return "✓"
    if state is StepState.FAILED:
        return "✗"
    return "⊘"


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"run-{now}-{short}"
