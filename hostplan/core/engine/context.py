"""
Host context — everything a probe or apply call may look at.

Probers and executors are stateless functions of (step, host context).
The context bundles the collaborator registry, the plan's variable
bindings, and the set of steps applied so far in this run (read by
``ServiceEnsure.restart_on``). Only the runner adds to that set.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from hostplan.adapters.registry import CollaboratorRegistry
from hostplan.core.domain.template import redact, render_template, render_value


@dataclass
class HostContext:
    registry: CollaboratorRegistry
    variables: Mapping[str, str] = field(default_factory=dict)
    secret_values: tuple[str, ...] = ()
    applied_steps: set[str] = field(default_factory=set)

    def render(self, template: str) -> str:
        return render_template(template, self.variables)

    def render_param(self, value):
        return render_value(value, self.variables)

    def redact(self, text: str) -> str:
        """Mask secret values before text reaches logs or records."""
        return redact(text, self.secret_values)
