"""
State prober — does a step's desired state already hold?

Probes are read-only: they only call the query side of each
collaborator. ``probe`` never raises; a collaborator error (permission
denied, missing tool, timeout) comes back as ``ProbeResult.failure``,
which is distinct from "unsatisfied" and fatal for that step.

Flow:
    step + host → kind-specific probe → Satisfied | Unsatisfied | ProbeError
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable

from hostplan.adapters.firewall.ufw import rule_text
from hostplan.core.engine.context import HostContext
from hostplan.core.errors import StepTimeout
from hostplan.core.models.record import HostFact, ProbeResult
from hostplan.core.models.step import StepKind, StepSpec

logger = logging.getLogger(__name__)


def probe(step: StepSpec, host: HostContext) -> ProbeResult:
    """Inspect the host for one step without mutating anything."""
    handler = _PROBES[step.kind]
    try:
        result = handler(step, host)
    except StepTimeout as e:
        result = ProbeResult.failure(host.redact(str(e)), timed_out=True)
    except Exception as e:
        result = ProbeResult.failure(host.redact(f"{type(e).__name__}: {e}"))

    logger.debug("probe %s → %s %s", step.label(), result.status.value, result.detail)
    return result


# ── Kind-specific probes ────────────────────────────────────────


def _probe_packages(step: StepSpec, host: HostContext) -> ProbeResult:
    pm = host.registry.packages
    facts = []
    missing = []
    for package in host.render_param(step.param("packages")):
        installed = pm.is_installed(package)
        facts.append(HostFact(subject=package, fact="installed", value=installed))
        if not installed:
            missing.append(package)

    if missing:
        return ProbeResult.drifted(f"not installed: {', '.join(missing)}", facts)
    return ProbeResult.holds("all packages installed", facts)


def desired_content(step: StepSpec, host: HostContext) -> bytes:
    """The rendered bytes a FileWrite step wants on disk."""
    return host.render(step.param("content_template")).encode("utf-8")


def _probe_file(step: StepSpec, host: HostContext) -> ProbeResult:
    fs = host.registry.filesystem
    path = host.render(step.param("path"))
    want = desired_content(step, host)

    current = fs.read(path)
    if current is None:
        return ProbeResult.drifted(f"{path} absent", [HostFact(subject=path, fact="exists", value=False)])

    facts = [HostFact(subject=path, fact="sha256", value=hashlib.sha256(current).hexdigest())]
    if current != want:
        return ProbeResult.drifted(f"{path} content differs", facts)

    mode = step.param("mode")
    if mode is not None:
        actual = fs.mode(path)
        facts.append(HostFact(subject=path, fact="mode", value=actual))
        if actual != int(mode, 8):
            return ProbeResult.drifted(f"{path} mode differs (want {mode})", facts)

    return ProbeResult.holds(f"{path} up to date", facts)


def _probe_firewall(step: StepSpec, host: HostContext) -> ProbeResult:
    fw = host.registry.firewall
    rule = rule_text(host.render_param(step.param("port")), step.param("proto", "tcp"))
    present = rule in fw.list_rules()
    facts = [HostFact(subject=rule, fact="allowed", value=present)]

    if not present:
        return ProbeResult.drifted(f"rule {rule} missing", facts)
    if step.param("enable", False):
        active = fw.is_active()
        facts.append(HostFact(subject="firewall", fact="active", value=active))
        if not active:
            return ProbeResult.drifted("firewall inactive", facts)
    return ProbeResult.holds(f"rule {rule} present", facts)


def _probe_service(step: StepSpec, host: HostContext) -> ProbeResult:
    sm = host.registry.services
    name = host.render(step.param("name"))

    triggers = sorted(set(step.param("restart_on", [])) & host.applied_steps)
    if triggers:
        return ProbeResult.drifted(f"restart requested by {', '.join(triggers)}")

    status = sm.status(name)
    facts = [HostFact(subject=name, fact="status", value=status)]
    if status != "running":
        return ProbeResult.drifted(f"{name} is {status}", facts)

    if step.param("enabled", True):
        enabled = sm.is_enabled(name)
        facts.append(HostFact(subject=name, fact="enabled", value=enabled))
        if not enabled:
            return ProbeResult.drifted(f"{name} not enabled", facts)

    return ProbeResult.holds(f"{name} running", facts)


def _probe_compose(step: StepSpec, host: HostContext) -> ProbeResult:
    containers = host.registry.containers
    compose_file = host.render(step.param("compose_file"))
    project_dir = host.render_param(step.param("project_dir"))

    triggers = sorted(set(step.param("restart_on", [])) & host.applied_steps)
    if triggers:
        return ProbeResult.drifted(f"redeploy requested by {', '.join(triggers)}")

    declared = containers.services(compose_file, project_dir)
    running = containers.running(compose_file, project_dir)
    facts = [HostFact(subject=svc, fact="running", value=svc in running) for svc in sorted(declared)]

    missing = sorted(declared - running)
    if not declared or missing:
        return ProbeResult.drifted(f"not running: {', '.join(missing) or '(no services)'}", facts)
    return ProbeResult.holds(f"{len(declared)} service(s) running", facts)


def _probe_certificate(step: StepSpec, host: HostContext) -> ProbeResult:
    domain = host.render(step.param("domain"))
    present = host.registry.certificates.has_certificate(domain)
    facts = [HostFact(subject=domain, fact="certificate", value=present)]
    if present:
        return ProbeResult.holds(f"certificate for {domain} present", facts)
    return ProbeResult.drifted(f"no certificate for {domain}", facts)


def cron_line(step: StepSpec, host: HostContext) -> str:
    return f"{host.render(str(step.param('schedule')))} {host.render(step.param('command'))}"


def _probe_cron(step: StepSpec, host: HostContext) -> ProbeResult:
    line = cron_line(step, host)
    present = line in host.registry.cron.lines(step.param("user"))
    if present:
        return ProbeResult.holds("cron entry present")
    return ProbeResult.drifted("cron entry missing")


_PROBES: dict[StepKind, Callable[[StepSpec, HostContext], ProbeResult]] = {
    StepKind.PACKAGE_INSTALL: _probe_packages,
    StepKind.FILE_WRITE: _probe_file,
    StepKind.FIREWALL_RULE: _probe_firewall,
    StepKind.SERVICE_ENSURE: _probe_service,
    StepKind.COMPOSE_APPLY: _probe_compose,
    StepKind.CERTIFICATE_ISSUE: _probe_certificate,
    StepKind.CRON_ENTRY: _probe_cron,
}
