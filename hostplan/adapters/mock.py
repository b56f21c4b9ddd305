"""
Mock host — universal in-memory test double for every collaborator.

Used in ``--mock`` runs and tests to simulate a host without touching
the real one. State lives in plain attributes (installed packages,
files, firewall rules, services…) so tests can arrange drift directly,
and every call is recorded so tests can assert that a run issued no
mutating calls at all. Failures are injected per method and target.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

import yaml

from hostplan.adapters.base import (
    CertificateIssuer,
    ContainerOrchestrator,
    CronTable,
    Filesystem,
    Firewall,
    PackageManager,
    ServiceManager,
    ServiceStatus,
    Shell,
)
from hostplan.adapters.registry import CollaboratorRegistry
from hostplan.adapters.shell.command import CommandFailed
from hostplan.core.errors import ExecutionFailed

DEFAULT_MODE = 0o644


@dataclass
class MockCall:
    """One recorded collaborator call."""

    method: str                     # e.g. "packages.install"
    args: tuple = field(default_factory=tuple)
    mutating: bool = False


class MockHost:
    """An in-memory host shared by all mock collaborators."""

    def __init__(self) -> None:
        self.packages: set[str] = set()
        self.files: dict[str, tuple[bytes, int]] = {}
        self.rules: set[str] = set()
        self.firewall_active = False
        self.running_services: set[str] = set()
        self.enabled_services: set[str] = set()
        self.compose_running: dict[str, set[str]] = {}
        self.certificates: set[str] = set()
        self.crontabs: dict[str, list[str]] = {}
        self.shell_commands: list[str] = []
        self._call_log: list[MockCall] = []
        self._failures: dict[tuple[str, str | None], Exception] = {}

    # ── Inspection ──────────────────────────────────────────────

    @property
    def call_log(self) -> list[MockCall]:
        return self._call_log

    @property
    def mutations(self) -> list[MockCall]:
        """Calls that changed host state."""
        return [c for c in self._call_log if c.mutating]

    @property
    def mutation_count(self) -> int:
        return len(self.mutations)

    def calls(self, method: str) -> list[MockCall]:
        return [c for c in self._call_log if c.method == method]

    # ── Arrangement ─────────────────────────────────────────────

    def set_failure(self, method: str, target: str | None = None, error: Exception | None = None) -> None:
        """Make ``method`` raise, for one target (first argument) or for all."""
        self._failures[(method, target)] = error or ExecutionFailed(f"Mock failure: {method}")

    def clear_failure(self, method: str, target: str | None = None) -> None:
        self._failures.pop((method, target), None)

    def put_file(self, path: str, content: str | bytes, mode: int = DEFAULT_MODE) -> None:
        data = content.encode("utf-8") if isinstance(content, str) else content
        self.files[path] = (data, mode)

    def reset(self) -> None:
        """Clear the call log and injected failures (host state stays)."""
        self._call_log.clear()
        self._failures.clear()

    def registry(self) -> CollaboratorRegistry:
        registry = CollaboratorRegistry()
        registry.register("packages", MockPackageManager(self))
        registry.register("filesystem", MockFilesystem(self))
        registry.register("firewall", MockFirewall(self))
        registry.register("services", MockServiceManager(self))
        registry.register("containers", MockContainerOrchestrator(self))
        registry.register("certificates", MockCertificateIssuer(self))
        registry.register("cron", MockCronTable(self))
        registry.register("shell", MockShell(self))
        return registry

    def record(self, method: str, *args, mutating: bool = False) -> None:
        self._call_log.append(MockCall(method=method, args=args, mutating=mutating))
        target = str(args[0]) if args else None
        for key in ((method, target), (method, None)):
            if key in self._failures:
                raise self._failures[key]


class _MockCollaborator:
    capability = "mock"

    def __init__(self, host: MockHost):
        self.host = host

    @property
    def name(self) -> str:
        return f"mock-{self.capability}"

    def is_available(self) -> bool:
        return True


class MockPackageManager(_MockCollaborator, PackageManager):
    capability = "packages"

    def is_installed(self, package: str) -> bool:
        self.host.record("packages.is_installed", package)
        return package in self.host.packages

    def install(self, packages: list[str], update: bool = False) -> str:
        self.host.record("packages.install", *packages, mutating=True)
        self.host.packages.update(packages)
        return f"[mock] installed {' '.join(packages)}"

    def remove(self, packages: list[str]) -> str:
        self.host.record("packages.remove", *packages, mutating=True)
        self.host.packages.difference_update(packages)
        return f"[mock] removed {' '.join(packages)}"


class MockFilesystem(_MockCollaborator, Filesystem):
    capability = "filesystem"

    def read(self, path: str) -> bytes | None:
        self.host.record("filesystem.read", path)
        entry = self.host.files.get(path)
        return entry[0] if entry else None

    def mode(self, path: str) -> int | None:
        self.host.record("filesystem.mode", path)
        entry = self.host.files.get(path)
        return entry[1] if entry else None

    def write(self, path: str, data: bytes, mode: int | None = None) -> None:
        self.host.record("filesystem.write", path, mutating=True)
        self.host.files[path] = (data, DEFAULT_MODE if mode is None else mode)

    def remove(self, path: str) -> None:
        self.host.record("filesystem.remove", path, mutating=True)
        self.host.files.pop(path, None)


class MockFirewall(_MockCollaborator, Firewall):
    capability = "firewall"

    def list_rules(self) -> set[str]:
        self.host.record("firewall.list_rules")
        return set(self.host.rules)

    def allow(self, rule: str) -> str:
        self.host.record("firewall.allow", rule, mutating=True)
        self.host.rules.add(rule)
        return "Rule added"

    def delete(self, rule: str) -> str:
        self.host.record("firewall.delete", rule, mutating=True)
        self.host.rules.discard(rule)
        return "Rule deleted"

    def is_active(self) -> bool:
        self.host.record("firewall.is_active")
        return self.host.firewall_active

    def enable(self) -> str:
        self.host.record("firewall.enable", mutating=True)
        self.host.firewall_active = True
        return "Firewall is active and enabled on system startup"


class MockServiceManager(_MockCollaborator, ServiceManager):
    capability = "services"

    def status(self, name: str) -> ServiceStatus:
        self.host.record("services.status", name)
        return "running" if name in self.host.running_services else "stopped"

    def is_enabled(self, name: str) -> bool:
        self.host.record("services.is_enabled", name)
        return name in self.host.enabled_services

    def enable(self, name: str) -> str:
        self.host.record("services.enable", name, mutating=True)
        self.host.enabled_services.add(name)
        return ""

    def disable(self, name: str) -> str:
        self.host.record("services.disable", name, mutating=True)
        self.host.enabled_services.discard(name)
        return ""

    def restart(self, name: str) -> str:
        self.host.record("services.restart", name, mutating=True)
        self.host.running_services.add(name)
        return ""

    def stop(self, name: str) -> str:
        self.host.record("services.stop", name, mutating=True)
        self.host.running_services.discard(name)
        return ""


class MockContainerOrchestrator(_MockCollaborator, ContainerOrchestrator):
    """Reads service names from compose files held by the mock filesystem."""

    capability = "containers"

    def services(self, compose_file: str, project_dir: str | None = None) -> set[str]:
        self.host.record("containers.services", compose_file)
        return self._declared(compose_file)

    def running(self, compose_file: str, project_dir: str | None = None) -> set[str]:
        self.host.record("containers.running", compose_file)
        return set(self.host.compose_running.get(compose_file, set()))

    def up(self, compose_file: str, env: Mapping[str, str] | None = None,
           project_dir: str | None = None) -> str:
        self.host.record("containers.up", compose_file, mutating=True)
        self.host.compose_running[compose_file] = self._declared(compose_file)
        return f"[mock] compose up {compose_file}"

    def down(self, compose_file: str, project_dir: str | None = None) -> str:
        self.host.record("containers.down", compose_file, mutating=True)
        self.host.compose_running.pop(compose_file, None)
        return f"[mock] compose down {compose_file}"

    def _declared(self, compose_file: str) -> set[str]:
        entry = self.host.files.get(compose_file)
        if entry is None:
            raise CommandFailed(
                ["docker", "compose", "-f", compose_file], 1,
                f"open {compose_file}: no such file or directory",
            )
        data = yaml.safe_load(entry[0].decode("utf-8")) or {}
        return set((data.get("services") or {}).keys())


class MockCertificateIssuer(_MockCollaborator, CertificateIssuer):
    capability = "certificates"

    def has_certificate(self, domain: str) -> bool:
        self.host.record("certificates.has_certificate", domain)
        return domain in self.host.certificates

    def issue(self, domain: str, email: str, plugin: str = "nginx") -> str:
        self.host.record("certificates.issue", domain, mutating=True)
        self.host.certificates.add(domain)
        return f"[mock] certificate issued for {domain}"

    def revoke(self, domain: str) -> str:
        self.host.record("certificates.revoke", domain, mutating=True)
        self.host.certificates.discard(domain)
        return f"[mock] certificate deleted for {domain}"


class MockCronTable(_MockCollaborator, CronTable):
    capability = "cron"

    def lines(self, user: str | None = None) -> list[str]:
        self.host.record("cron.lines", user or "root")
        return list(self.host.crontabs.get(user or "root", []))

    def add(self, line: str, user: str | None = None) -> str:
        self.host.record("cron.add", line, mutating=True)
        table = self.host.crontabs.setdefault(user or "root", [])
        if line not in table:
            table.append(line)
        return ""

    def remove(self, line: str, user: str | None = None) -> str:
        self.host.record("cron.remove", line, mutating=True)
        table = self.host.crontabs.get(user or "root", [])
        self.host.crontabs[user or "root"] = [entry for entry in table if entry != line]
        return ""


class MockShell(_MockCollaborator, Shell):
    capability = "shell"

    def run(self, command: str) -> str:
        self.host.record("shell.run", command, mutating=True)
        self.host.shell_commands.append(command)
        return f"[mock] {command}"
