"""
StepSpec model — one declarative, idempotent provisioning action.

A step names *what* should be true on the host (these packages are
installed, this file has this content, this port is open). The prober
decides whether it already holds; the executor makes it hold.

Steps validate on construction and are immutable afterwards. Any
malformed input raises InvalidStepSpec, never a bare pydantic error.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, model_validator

from hostplan.core.errors import InvalidStepSpec


class StepKind(str, Enum):
    """The enumerated set of step kinds."""

    PACKAGE_INSTALL = "PackageInstall"
    FILE_WRITE = "FileWrite"
    FIREWALL_RULE = "FirewallRule"
    SERVICE_ENSURE = "ServiceEnsure"
    COMPOSE_APPLY = "ComposeApply"
    CERTIFICATE_ISSUE = "CertificateIssue"
    CRON_ENTRY = "CronEntry"


class FailurePolicy(str, Enum):
    """What the runner does after a step fails."""

    ABORT = "abort"
    CONTINUE = "continue"


# Rollback value meaning "use the kind's natural inverse".
AUTO_ROLLBACK = "auto"

REQUIRED_PARAMS: dict[StepKind, tuple[str, ...]] = {
    StepKind.PACKAGE_INSTALL: ("packages",),
    StepKind.FILE_WRITE: ("path", "content_template"),
    StepKind.FIREWALL_RULE: ("port",),
    StepKind.SERVICE_ENSURE: ("name",),
    StepKind.COMPOSE_APPLY: ("compose_file",),
    StepKind.CERTIFICATE_ISSUE: ("domain", "email"),
    StepKind.CRON_ENTRY: ("schedule", "command"),
}

OPTIONAL_PARAMS: dict[StepKind, tuple[str, ...]] = {
    StepKind.PACKAGE_INSTALL: ("update",),
    StepKind.FILE_WRITE: ("mode",),
    StepKind.FIREWALL_RULE: ("proto", "enable"),
    StepKind.SERVICE_ENSURE: ("enabled", "restart_on"),
    StepKind.COMPOSE_APPLY: ("env", "project_dir", "restart_on"),
    StepKind.CERTIFICATE_ISSUE: ("plugin",),
    StepKind.CRON_ENTRY: ("user",),
}

_PROTOCOLS = ("tcp", "udp", "any")
_CERT_PLUGINS = ("nginx", "standalone")


class StepSpec(BaseModel):
    """A validated, immutable provisioning step.

    Attributes:
        id:          Unique within the plan.
        kind:        One of StepKind.
        params:      Kind-specific parameters (see REQUIRED_PARAMS).
        depends_on:  IDs of steps that must succeed first.
        rollback:    None (leave as-is), "auto" (natural inverse),
                     or a shell command run on unwind.
        on_failure:  Per-step override of the plan failure policy.
        timeout:     Per-step deadline in seconds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    kind: StepKind
    description: str = ""
    depends_on: frozenset[str] = Field(default_factory=frozenset)
    params: dict[str, Any] = Field(default_factory=dict)
    rollback: str | None = None
    on_failure: FailurePolicy | None = None
    timeout: float | None = None

    @model_validator(mode="before")
    @classmethod
    def _check_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise InvalidStepSpec(f"expected a mapping, got {type(data).__name__}")

        data = dict(data)
        step_id = data.get("id")
        if not isinstance(step_id, str) or not step_id.strip():
            raise InvalidStepSpec("missing or empty 'id'")

        raw_kind = data.get("kind")
        if isinstance(raw_kind, StepKind):
            kind = raw_kind
        else:
            try:
                kind = StepKind(raw_kind)
            except ValueError:
                valid = ", ".join(k.value for k in StepKind)
                raise InvalidStepSpec(f"unknown kind {raw_kind!r}. Valid: {valid}", step_id) from None

        params = data.get("params") or {}
        if not isinstance(params, dict):
            raise InvalidStepSpec("'params' must be a mapping", step_id)
        data["params"] = _normalize_params(kind, params, step_id)

        deps = data.get("depends_on") or []
        if isinstance(deps, str):
            deps = [deps]
        if not all(isinstance(d, str) for d in deps):
            raise InvalidStepSpec("'depends_on' must be a list of step ids", step_id)
        data["depends_on"] = frozenset(deps)

        timeout = data.get("timeout")
        if timeout is not None and (not isinstance(timeout, int | float) or timeout <= 0):
            raise InvalidStepSpec("'timeout' must be a positive number of seconds", step_id)

        return data

    @field_serializer("depends_on")
    def _serialize_deps(self, deps: frozenset[str]) -> list[str]:
        return sorted(deps)

    @classmethod
    def parse(cls, data: Any) -> StepSpec:
        """Validate a raw mapping, raising InvalidStepSpec on any problem."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            step_id = data.get("id") if isinstance(data, dict) else None
            raise InvalidStepSpec(_first_error(e), step_id) from e

    # ── Accessors ───────────────────────────────────────────────

    def param(self, key: str, default: Any = None) -> Any:
        return self.params.get(key, default)

    @property
    def auto_rollback(self) -> bool:
        return self.rollback == AUTO_ROLLBACK

    @property
    def rollback_command(self) -> str | None:
        """The explicit rollback command, if one was given."""
        if self.rollback and self.rollback != AUTO_ROLLBACK:
            return self.rollback
        return None

    def label(self) -> str:
        return f"{self.kind.value}({self.id})"


def _normalize_params(kind: StepKind, params: dict[str, Any], step_id: str) -> dict[str, Any]:
    """Check required keys and coerce params into canonical form."""
    missing = [k for k in REQUIRED_PARAMS[kind] if k not in params]
    if missing:
        raise InvalidStepSpec(
            f"{kind.value} requires param(s): {', '.join(missing)}", step_id
        )

    allowed = set(REQUIRED_PARAMS[kind]) | set(OPTIONAL_PARAMS[kind])
    unknown = sorted(set(params) - allowed)
    if unknown:
        raise InvalidStepSpec(f"{kind.value} does not accept param(s): {', '.join(unknown)}", step_id)

    out = dict(params)

    if kind is StepKind.PACKAGE_INSTALL:
        packages = out["packages"]
        if isinstance(packages, str):
            packages = packages.split()
        if not packages or not all(isinstance(p, str) and p for p in packages):
            raise InvalidStepSpec("'packages' must be a non-empty list of names", step_id)
        out["packages"] = list(packages)

    elif kind is StepKind.FILE_WRITE:
        if not isinstance(out["path"], str) or not out["path"]:
            raise InvalidStepSpec("'path' must be a non-empty string", step_id)
        if not isinstance(out["content_template"], str):
            raise InvalidStepSpec("'content_template' must be a string", step_id)
        if "mode" in out:
            out["mode"] = _normalize_mode(out["mode"], step_id)

    elif kind is StepKind.FIREWALL_RULE:
        port = out["port"]
        if isinstance(port, bool) or not isinstance(port, int | str) or port == "":
            raise InvalidStepSpec("'port' must be a port number or an application profile name", step_id)
        if isinstance(port, int) and not 0 < port < 65536:
            raise InvalidStepSpec(f"port {port} out of range", step_id)
        proto = out.get("proto", "tcp")
        if proto not in _PROTOCOLS:
            raise InvalidStepSpec(f"'proto' must be one of {', '.join(_PROTOCOLS)}", step_id)

    elif kind is StepKind.SERVICE_ENSURE:
        _normalize_restart_on(out, step_id)

    elif kind is StepKind.COMPOSE_APPLY:
        _normalize_restart_on(out, step_id)
        env = out.get("env", {})
        if not isinstance(env, dict):
            raise InvalidStepSpec("'env' must be a mapping", step_id)
        if env:
            out["env"] = {str(k): str(v) for k, v in env.items()}

    elif kind is StepKind.CERTIFICATE_ISSUE:
        plugin = out.get("plugin", "nginx")
        if plugin not in _CERT_PLUGINS:
            raise InvalidStepSpec(f"'plugin' must be one of {', '.join(_CERT_PLUGINS)}", step_id)

    elif kind is StepKind.CRON_ENTRY:
        if len(str(out["schedule"]).split()) != 5:
            raise InvalidStepSpec("'schedule' must have five cron fields", step_id)

    return out


def _normalize_restart_on(params: dict[str, Any], step_id: str) -> None:
    restart_on = params.get("restart_on", [])
    if isinstance(restart_on, str):
        params["restart_on"] = [restart_on]
    elif not isinstance(restart_on, list):
        raise InvalidStepSpec("'restart_on' must be a list of step ids", step_id)


def _normalize_mode(mode: Any, step_id: str) -> str:
    """Canonical file mode: a four-digit octal string such as '0644'.

    The digits are octal however they are written, so ``600``, ``"600"``
    and ``"0600"`` are the same mode.
    """
    if isinstance(mode, bool):
        raise InvalidStepSpec(f"'mode' {mode!r} is not an octal file mode", step_id)
    try:
        value = int(str(mode), 8)
    except ValueError:
        raise InvalidStepSpec(f"'mode' {mode!r} is not an octal file mode", step_id) from None
    if not 0 <= value <= 0o7777:
        raise InvalidStepSpec(f"'mode' {mode!r} out of range", step_id)
    return f"{value:04o}"


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg', 'invalid value')}" if loc else err.get("msg", "invalid value")
