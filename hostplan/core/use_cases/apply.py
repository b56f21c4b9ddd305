"""
Apply use case — run a plan file against this host.

This is the top-level orchestrator: it loads the plan, binds
variables, picks the collaborators (real or mock), runs the plan
under the run lock and maps every plan-level failure to an exit code.
The full vertical slice from plan file to audited run.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from hostplan.adapters.mock import MockHost
from hostplan.adapters.registry import CollaboratorRegistry, local_registry
from hostplan.core.config.loader import load_plan, resolve_variables
from hostplan.core.config.settings import Settings
from hostplan.core.engine.runner import PlanRunner, RunReport, StepReport, generate_run_id
from hostplan.core.errors import ConcurrentRunDetected, InvalidStepSpec
from hostplan.core.models.plan import Plan
from hostplan.core.models.step import FailurePolicy
from hostplan.core.persistence.audit import AuditWriter
from hostplan.core.persistence.run_lock import RunLock

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_LOCKED = 3


@dataclass
class ApplyPlanResult:
    """Result of applying a plan file."""

    report: RunReport | None = None
    plan: Plan | None = None
    error: str | None = None
    exit_code: int = EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        if self.error:
            return {"error": self.error, "exit_code": self.exit_code}
        result: dict[str, Any] = {"plan": self.plan.name if self.plan else ""}
        if self.report:
            result["report"] = self.report.to_dict()
        result["exit_code"] = self.exit_code
        return result


def apply_plan(
    plan_path: Path,
    settings: Settings,
    *,
    on_failure: FailurePolicy | None = None,
    dry_run: bool = False,
    cli_vars: Mapping[str, str] | None = None,
    mock: bool = False,
    registry: CollaboratorRegistry | None = None,
    on_step: Callable[[StepReport], None] | None = None,
    environ: Mapping[str, str] | None = None,
) -> ApplyPlanResult:
    """Load, bind and run a plan.

    Args:
        plan_path: Plan YAML file.
        settings: Resolved runtime settings.
        on_failure: Run-wide policy from the command line.
        dry_run: Probe only.
        cli_vars: ``--var`` bindings (highest precedence).
        mock: Run against an empty in-memory host.
        registry: Explicit collaborators (overrides ``mock``).
        on_step: Progress callback, see PlanRunner.
        environ: Environment for ``HOSTPLAN_VAR_*`` lookup.
    """
    try:
        plan = resolve_variables(load_plan(plan_path), cli_vars, environ)
    except InvalidStepSpec as e:
        return ApplyPlanResult(error=str(e), exit_code=EXIT_INVALID)

    if registry is None and not mock and not dry_run:
        problem = _preflight(settings)
        if problem:
            return ApplyPlanResult(plan=plan, error=problem, exit_code=EXIT_INVALID)

    if registry is None:
        registry = MockHost().registry() if mock else local_registry()

    run_id = generate_run_id()
    runner = PlanRunner(
        plan,
        registry,
        state_dir=settings.state_dir,
        run_id=run_id,
        dry_run=dry_run,
        on_failure=on_failure or settings.on_failure,
        default_timeout=settings.default_timeout,
        lock=RunLock(settings.effective_lock_path, run_id),
        audit_writer=AuditWriter(settings.audit_path),
        on_step=on_step,
    )

    try:
        report = runner.run()
    except ConcurrentRunDetected as e:
        logger.debug("%s", e)
        return ApplyPlanResult(plan=plan, error=str(e), exit_code=EXIT_LOCKED)
    except OSError as e:
        # State dir or lock not writable.
        return ApplyPlanResult(plan=plan, error=f"Cannot write run state: {e}", exit_code=EXIT_INVALID)

    return ApplyPlanResult(report=report, plan=plan, exit_code=report.exit_code)


def _preflight(settings: Settings) -> str | None:
    """Problems that must stop a real run before the lock is taken."""
    if settings.require_root and hasattr(os, "geteuid") and os.geteuid() != 0:
        return "This command must be run as root (set require_root: false to skip)"
    return None
