"""
Plan loader — reads a plan YAML file into a validated Plan.

This is the primary entry point for plan input. It reads YAML,
validates against the pydantic models and binds variables. Every
problem (unreadable file, bad YAML, bad step) surfaces as
InvalidStepSpec so the CLI can map it to one exit code.

``dump_plan`` writes the canonical form back; loading what it writes
yields an equal Plan.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml

from hostplan.core.domain.template import placeholders
from hostplan.core.errors import InvalidStepSpec
from hostplan.core.models.plan import Plan

logger = logging.getLogger(__name__)

VAR_ENV_PREFIX = "HOSTPLAN_VAR_"

# Canonical top-level key order for dumped plans
_PLAN_KEYS = ("name", "description", "on_failure", "variables", "secrets", "steps")
_STEP_KEYS = ("id", "kind", "description", "depends_on", "params", "rollback", "on_failure", "timeout")


def parse_plan(text: str, source: str = "<string>") -> Plan:
    """Parse plan YAML text.

    Raises:
        InvalidStepSpec: The YAML is malformed or the plan is invalid.
    """
    try:
        data = yaml.load(text, Loader=_PlanLoader)
    except yaml.YAMLError as e:
        raise InvalidStepSpec(f"Invalid YAML in {source}: {e}") from e

    if data is None:
        raise InvalidStepSpec(f"{source} is empty")
    if not isinstance(data, dict):
        raise InvalidStepSpec(f"Expected a YAML mapping in {source}, got {type(data).__name__}")

    # The document may wrap everything under a "plan" key or be flat
    if set(data) == {"plan"} and isinstance(data["plan"], dict):
        data = data["plan"]

    return Plan.parse(data)


def load_plan(path: Path) -> Plan:
    """Load and validate a plan file.

    Raises:
        InvalidStepSpec: The file is missing, unreadable or invalid.
    """
    if not path.is_file():
        raise InvalidStepSpec(f"Plan file not found: {path}")

    logger.debug("Loading plan from %s", path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidStepSpec(f"Cannot read {path}: {e}") from e

    plan = parse_plan(raw, source=str(path))
    logger.info("Loaded plan '%s' with %d steps", plan.name, len(plan.steps))
    return plan


def dump_plan(plan: Plan) -> str:
    """Serialize a plan to canonical YAML."""
    doc = plan.to_document()
    ordered = {k: doc[k] for k in _PLAN_KEYS if k in doc}
    if "steps" in ordered:
        ordered["steps"] = [{k: s[k] for k in _STEP_KEYS if k in s} for s in ordered["steps"]]
    return yaml.dump(ordered, Dumper=_PlanDumper, sort_keys=False, allow_unicode=True, width=100)


def parse_var_overrides(pairs: Iterable[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` pairs from the command line.

    Raises:
        InvalidStepSpec: A pair has no ``=`` or an empty key.
    """
    result = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise InvalidStepSpec(f"Invalid --var '{pair}', expected KEY=VALUE")
        result[key.strip()] = value
    return result


def resolve_variables(
    plan: Plan,
    cli_vars: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Plan:
    """Bind variables: plan values < HOSTPLAN_VAR_<NAME> env < --var flags.

    Raises:
        InvalidStepSpec: A secret declared by the plan has no value.
    """
    env = os.environ if environ is None else environ
    overrides = {
        name[len(VAR_ENV_PREFIX):]: value
        for name, value in env.items()
        if name.startswith(VAR_ENV_PREFIX) and len(name) > len(VAR_ENV_PREFIX)
    }
    overrides.update(cli_vars or {})

    bound = plan.with_variables(overrides)
    unbound = [name for name in bound.secrets if not bound.variables.get(name)]
    if unbound:
        raise InvalidStepSpec(
            f"secret variable(s) not bound: {', '.join(unbound)} "
            f"(set {VAR_ENV_PREFIX}<NAME> or pass --var NAME=VALUE)"
        )
    return bound


def unbound_placeholders(plan: Plan) -> set[str]:
    """Template names used by steps but neither bound nor declared secret."""
    found: set[str] = set()
    for step in plan.steps:
        for text in _strings(step.params):
            found |= placeholders(text)
        if step.rollback_command:
            found |= placeholders(step.rollback_command)
    return found - set(plan.variables) - set(plan.secrets)


def _strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _strings(v)
    elif isinstance(value, list):
        for v in value:
            yield from _strings(v)


class _PlanDumper(yaml.SafeDumper):
    """Block style for multi-line strings (file templates stay readable)."""


def _str_representer(dumper: yaml.SafeDumper, data: str) -> yaml.Node:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_PlanDumper.add_representer(str, _str_representer)


class _PlanLoader(yaml.SafeLoader):
    """Safe loading, except that zero-padded numbers keep their digits.

    YAML 1.1 reads ``mode: 0600`` as the octal integer 384; as a string
    it means the same thing as ``mode: 600``.
    """


def _int_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> int | str:
    text = loader.construct_scalar(node)
    if len(text) > 1 and text.startswith("0") and text.isdigit():
        return text
    return loader.construct_yaml_int(node)


_PlanLoader.add_constructor("tag:yaml.org,2002:int", _int_constructor)
