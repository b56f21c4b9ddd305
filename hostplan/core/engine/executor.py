"""
Executor — applies (and undoes) one step through the collaborators.

``apply`` issues exactly one collaborator call group per step kind and
touches only the resource named in the step's params. It never retries
and never raises: collaborator failures come back as
``ApplyResult.failed`` with the captured reason.

Before mutating, ``apply`` records what it is about to replace in
``ApplyResult.undo``. ``revert`` uses that record to restore the prior
state during rollback, and raises RollbackFailed when it cannot.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from hostplan.adapters.firewall.ufw import rule_text
from hostplan.core.engine.context import HostContext
from hostplan.core.engine.prober import cron_line, desired_content
from hostplan.core.errors import RollbackFailed, StepTimeout
from hostplan.core.models.record import ApplyResult
from hostplan.core.models.step import StepKind, StepSpec

logger = logging.getLogger(__name__)


def apply(step: StepSpec, host: HostContext) -> ApplyResult:
    """Make the step's desired state hold on the host."""
    handler = _APPLIERS[step.kind]
    try:
        result = handler(step, host)
    except StepTimeout as e:
        result = ApplyResult.failed(host.redact(str(e)), timed_out=True)
    except Exception as e:
        result = ApplyResult.failed(host.redact(f"{type(e).__name__}: {e}"))

    if result.ok:
        logger.info("✓ applied %s", step.label())
    else:
        logger.warning("✗ %s failed: %s", step.label(), result.reason)
    return result


def revert(step: StepSpec, host: HostContext, undo: dict[str, Any]) -> str:
    """Undo an applied step.

    An explicit rollback command wins; otherwise ``rollback: auto``
    uses the kind's natural inverse.

    Returns:
        A short description of what was undone.

    Raises:
        RollbackFailed: The step has no rollback, or undoing it failed.
    """
    try:
        command = step.rollback_command
        if command:
            host.registry.shell.run(host.render(command))
            return f"ran: {host.redact(host.render(command))}"
        if step.auto_rollback:
            return _REVERTERS[step.kind](step, host, undo)
    except Exception as e:
        raise RollbackFailed(step.id, host.redact(f"{type(e).__name__}: {e}")) from e
    raise RollbackFailed(step.id, "no rollback action declared")


# ── Appliers ────────────────────────────────────────────────────


def _apply_packages(step: StepSpec, host: HostContext) -> ApplyResult:
    pm = host.registry.packages
    packages = host.render_param(step.param("packages"))
    missing = [p for p in packages if not pm.is_installed(p)]
    if not missing:
        return ApplyResult.applied("nothing to install")
    output = pm.install(missing, update=bool(step.param("update", False)))
    return ApplyResult.applied(output, undo={"installed": missing})


def _apply_file(step: StepSpec, host: HostContext) -> ApplyResult:
    fs = host.registry.filesystem
    path = host.render(step.param("path"))
    data = desired_content(step, host)
    mode = step.param("mode")

    previous = fs.read(path)
    undo = {
        "existed": previous is not None,
        "content": previous,
        "mode": fs.mode(path) if previous is not None else None,
    }
    # Without an explicit mode an existing file keeps its own.
    fs.write(path, data, int(mode, 8) if mode is not None else undo["mode"])
    return ApplyResult.applied(f"wrote {len(data)} bytes to {path}", undo=undo)


def _apply_firewall(step: StepSpec, host: HostContext) -> ApplyResult:
    fw = host.registry.firewall
    rule = rule_text(host.render_param(step.param("port")), step.param("proto", "tcp"))
    undo = {"rule": rule, "added": False, "enabled": False}
    output = []

    if rule not in fw.list_rules():
        output.append(fw.allow(rule))
        undo["added"] = True
    if step.param("enable", False) and not fw.is_active():
        output.append(fw.enable())
        undo["enabled"] = True
    return ApplyResult.applied("\n".join(o for o in output if o), undo=undo)


def _apply_service(step: StepSpec, host: HostContext) -> ApplyResult:
    sm = host.registry.services
    name = host.render(step.param("name"))
    want_enabled = step.param("enabled", True)

    undo = {
        "name": name,
        "was_running": sm.status(name) == "running",
        "was_enabled": sm.is_enabled(name),
    }
    if want_enabled and not undo["was_enabled"]:
        sm.enable(name)
    output = sm.restart(name)
    return ApplyResult.applied(output or f"{name} restarted", undo=undo)


def _apply_compose(step: StepSpec, host: HostContext) -> ApplyResult:
    compose_file = host.render(step.param("compose_file"))
    project_dir = host.render_param(step.param("project_dir"))
    env = host.render_param(step.param("env", {}))
    undo = {
        "compose_file": compose_file,
        "project_dir": project_dir,
        "was_running": bool(host.registry.containers.running(compose_file, project_dir)),
    }
    output = host.registry.containers.up(compose_file, env, project_dir)
    return ApplyResult.applied(host.redact(output), undo=undo)


def _apply_certificate(step: StepSpec, host: HostContext) -> ApplyResult:
    domain = host.render(step.param("domain"))
    output = host.registry.certificates.issue(
        domain,
        host.render(step.param("email")),
        step.param("plugin", "nginx"),
    )
    return ApplyResult.applied(output, undo={"domain": domain})


def _apply_cron(step: StepSpec, host: HostContext) -> ApplyResult:
    line = cron_line(step, host)
    host.registry.cron.add(line, step.param("user"))
    return ApplyResult.applied(f"added cron entry: {host.redact(line)}", undo={"line": line})


# ── Reverters (rollback: auto) ──────────────────────────────────


def _revert_packages(step: StepSpec, host: HostContext, undo: dict[str, Any]) -> str:
    installed = undo.get("installed") or []
    if not installed:
        return "no packages were installed"
    host.registry.packages.remove(installed)
    return f"removed {', '.join(installed)}"


def _revert_file(step: StepSpec, host: HostContext, undo: dict[str, Any]) -> str:
    fs = host.registry.filesystem
    path = host.render(step.param("path"))
    if undo.get("existed"):
        fs.write(path, undo["content"], undo.get("mode"))
        return f"restored previous {path}"
    fs.remove(path)
    return f"removed {path}"


def _revert_firewall(step: StepSpec, host: HostContext, undo: dict[str, Any]) -> str:
    if undo.get("added"):
        host.registry.firewall.delete(undo["rule"])
        return f"deleted rule {undo['rule']}"
    return "rule pre-existed"


def _revert_service(step: StepSpec, host: HostContext, undo: dict[str, Any]) -> str:
    sm = host.registry.services
    name = undo.get("name") or host.render(step.param("name"))
    done = []
    if not undo.get("was_running", False):
        sm.stop(name)
        done.append("stopped")
    if step.param("enabled", True) and not undo.get("was_enabled", False):
        sm.disable(name)
        done.append("disabled")
    return f"{name} {' and '.join(done)}" if done else f"{name} left running"


def _revert_compose(step: StepSpec, host: HostContext, undo: dict[str, Any]) -> str:
    compose_file = undo.get("compose_file") or host.render(step.param("compose_file"))
    if undo.get("was_running", False):
        return f"{compose_file} was already up; left running"
    host.registry.containers.down(compose_file, undo.get("project_dir"))
    return f"compose down {compose_file}"


def _revert_certificate(step: StepSpec, host: HostContext, undo: dict[str, Any]) -> str:
    domain = undo.get("domain") or host.render(step.param("domain"))
    host.registry.certificates.revoke(domain)
    return f"deleted certificate for {domain}"


def _revert_cron(step: StepSpec, host: HostContext, undo: dict[str, Any]) -> str:
    line = undo.get("line") or cron_line(step, host)
    host.registry.cron.remove(line, step.param("user"))
    return "removed cron entry"


_APPLIERS: dict[StepKind, Callable[[StepSpec, HostContext], ApplyResult]] = {
    StepKind.PACKAGE_INSTALL: _apply_packages,
    StepKind.FILE_WRITE: _apply_file,
    StepKind.FIREWALL_RULE: _apply_firewall,
    StepKind.SERVICE_ENSURE: _apply_service,
    StepKind.COMPOSE_APPLY: _apply_compose,
    StepKind.CERTIFICATE_ISSUE: _apply_certificate,
    StepKind.CRON_ENTRY: _apply_cron,
}

_REVERTERS: dict[StepKind, Callable[[StepSpec, HostContext, dict[str, Any]], str]] = {
    StepKind.PACKAGE_INSTALL: _revert_packages,
    StepKind.FILE_WRITE: _revert_file,
    StepKind.FIREWALL_RULE: _revert_firewall,
    StepKind.SERVICE_ENSURE: _revert_service,
    StepKind.COMPOSE_APPLY: _revert_compose,
    StepKind.CERTIFICATE_ISSUE: _revert_certificate,
    StepKind.CRON_ENTRY: _revert_cron,
}
