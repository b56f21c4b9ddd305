"""
Plan model — an ordered, dependency-linked collection of steps.

The plan also carries the global failure policy and the variable
bindings used to render templates. Every ``depends_on`` reference must
resolve inside the plan and the graph must be acyclic; a plan that
violates either is rejected at construction with InvalidStepSpec.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from hostplan.core.domain.dag import topological_order, transitive_dependents, validate_dag
from hostplan.core.errors import InvalidStepSpec
from hostplan.core.models.step import FailurePolicy, StepSpec


class Plan(BaseModel):
    """A validated provisioning plan."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = "plan"
    description: str = ""
    on_failure: FailurePolicy = FailurePolicy.ABORT
    variables: dict[str, str] = Field(default_factory=dict)
    secrets: list[str] = Field(default_factory=list)
    steps: list[StepSpec] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise InvalidStepSpec(f"plan must be a mapping, got {type(data).__name__}")
        data = dict(data)

        variables = data.get("variables") or {}
        if not isinstance(variables, dict):
            raise InvalidStepSpec("'variables' must be a mapping")
        data["variables"] = {str(k): "" if v is None else str(v) for k, v in variables.items()}

        steps = data.get("steps") or []
        if not isinstance(steps, list):
            raise InvalidStepSpec("'steps' must be a list")
        data["steps"] = [s if isinstance(s, StepSpec) else StepSpec.parse(s) for s in steps]
        return data

    @model_validator(mode="after")
    def _check_graph(self) -> Plan:
        errors = validate_dag(self.steps)
        if errors:
            raise InvalidStepSpec("; ".join(errors))

        ids = {s.id for s in self.steps}
        for step in self.steps:
            for ref in step.param("restart_on", []):
                if ref not in ids:
                    raise InvalidStepSpec(f"'restart_on' references unknown step '{ref}'", step.id)
                if ref not in step.depends_on:
                    raise InvalidStepSpec(f"'restart_on' step '{ref}' must also be in depends_on", step.id)
        return self

    @classmethod
    def parse(cls, data: Any) -> Plan:
        """Validate a raw plan document, raising InvalidStepSpec on any problem."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            err = e.errors()[0]
            loc = ".".join(str(p) for p in err.get("loc", ()))
            raise InvalidStepSpec(f"{loc}: {err.get('msg', 'invalid value')}") from e

    # ── Lookups ─────────────────────────────────────────────────

    def get_step(self, step_id: str) -> StepSpec | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def ordered_steps(self) -> list[StepSpec]:
        """Steps in dependency order, declaration order as tie-breaker."""
        return topological_order(self.steps)

    def dependents_of(self, step_id: str) -> set[str]:
        """IDs of every step that transitively depends on ``step_id``."""
        return transitive_dependents(self.steps, step_id)

    def policy_for(self, step: StepSpec, default: FailurePolicy | None = None) -> FailurePolicy:
        """Effective failure policy: step override, else run default, else plan."""
        return step.on_failure or default or self.on_failure

    def with_variables(self, overrides: dict[str, str]) -> Plan:
        """A copy of this plan with extra or replaced variable bindings."""
        if not overrides:
            return self
        merged = {**self.variables, **{k: str(v) for k, v in overrides.items()}}
        return self.model_copy(update={"variables": merged})

    def secret_values(self) -> list[str]:
        """Bound values of the variables declared secret."""
        return [self.variables[name] for name in self.secrets if self.variables.get(name)]

    def to_document(self) -> dict[str, Any]:
        """Plain mapping suitable for serialization (parse → dump → parse is lossless)."""
        return self.model_dump(mode="json", exclude_defaults=True)
