"""
Validate use case — check a plan file and report issues.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from hostplan.core.config.loader import load_plan, unbound_placeholders
from hostplan.core.errors import InvalidStepSpec
from hostplan.core.models.plan import Plan


@dataclass
class PlanCheckResult:
    """Result of plan validation."""

    valid: bool = False
    plan: Plan | None = None
    plan_path: Path | None = None
    order: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "plan_path": str(self.plan_path) if self.plan_path else None,
            "plan_name": self.plan.name if self.plan else None,
            "step_count": len(self.plan.steps) if self.plan else 0,
            "order": self.order,
            "errors": self.errors,
            "warnings": self.warnings,
        }


def check_plan(plan_path: Path) -> PlanCheckResult:
    """Validate a plan file and report issues.

    Returns:
        PlanCheckResult with validation status, execution order and
        any issues.
    """
    result = PlanCheckResult(plan_path=plan_path)

    try:
        plan = load_plan(plan_path)
    except InvalidStepSpec as e:
        result.errors.append(str(e))
        return result

    result.plan = plan
    result.order = [s.id for s in plan.ordered_steps()]
    result.valid = True

    # Semantic checks
    if not plan.steps:
        result.warnings.append("Plan has no steps. Nothing will be applied.")

    for name in sorted(unbound_placeholders(plan)):
        result.warnings.append(f"'{{{name}}}' is not a plan variable and will be left as-is unless bound at apply time.")

    for name in plan.secrets:
        if name in plan.variables and plan.variables[name]:
            result.warnings.append(f"Secret '{name}' has a value in the plan file. Bind it at apply time instead.")

    return result
