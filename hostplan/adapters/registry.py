"""
Collaborator registry — one adapter per host capability.

The registry is the single point of collaborator management. The
prober and executor never construct adapters; they ask the registry
for a capability. Swapping the whole registry (``MockHost.registry()``)
is how tests and ``--mock`` runs avoid touching the real host.
"""

from __future__ import annotations

import logging
from typing import Any

from hostplan.adapters.base import (
    CertificateIssuer,
    Collaborator,
    ContainerOrchestrator,
    CronTable,
    Filesystem,
    Firewall,
    PackageManager,
    ServiceManager,
    Shell,
)
from hostplan.core.errors import ExecutionFailed

logger = logging.getLogger(__name__)

# capability name → required base class
CAPABILITIES: dict[str, type[Collaborator]] = {
    "packages": PackageManager,
    "filesystem": Filesystem,
    "firewall": Firewall,
    "services": ServiceManager,
    "containers": ContainerOrchestrator,
    "certificates": CertificateIssuer,
    "cron": CronTable,
    "shell": Shell,
}


class CollaboratorRegistry:
    """Central registry of collaborator adapters, keyed by capability."""

    def __init__(self) -> None:
        self._adapters: dict[str, Collaborator] = {}

    def register(self, capability: str, adapter: Collaborator) -> None:
        """Register an adapter for a capability.

        Raises:
            ValueError: Unknown capability, or the adapter does not
                implement it.
        """
        expected = CAPABILITIES.get(capability)
        if expected is None:
            raise ValueError(f"Unknown capability '{capability}'. Valid: {', '.join(CAPABILITIES)}")
        if not isinstance(adapter, expected):
            raise ValueError(f"{adapter!r} does not implement {expected.__name__}")
        if capability in self._adapters:
            logger.warning("Overwriting existing adapter for %s", capability)
        self._adapters[capability] = adapter
        logger.debug("Registered %s adapter: %s", capability, adapter.name)

    def get(self, capability: str) -> Collaborator | None:
        return self._adapters.get(capability)

    def require(self, capability: str) -> Any:
        """Look up a capability, failing loudly when nothing provides it."""
        adapter = self._adapters.get(capability)
        if adapter is None:
            raise ExecutionFailed(f"No collaborator registered for '{capability}'")
        return adapter

    def list_capabilities(self) -> list[str]:
        return list(self._adapters.keys())

    def adapter_status(self) -> dict[str, dict[str, Any]]:
        """Availability of every registered adapter."""
        status = {}
        for capability, adapter in self._adapters.items():
            try:
                available = adapter.is_available()
            except Exception:
                available = False
            status[capability] = {
                "name": adapter.name,
                "available": available,
                "type": adapter.__class__.__name__,
            }
        return status

    # Typed accessors used by the prober and executor.

    @property
    def packages(self) -> PackageManager:
        return self.require("packages")

    @property
    def filesystem(self) -> Filesystem:
        return self.require("filesystem")

    @property
    def firewall(self) -> Firewall:
        return self.require("firewall")

    @property
    def services(self) -> ServiceManager:
        return self.require("services")

    @property
    def containers(self) -> ContainerOrchestrator:
        return self.require("containers")

    @property
    def certificates(self) -> CertificateIssuer:
        return self.require("certificates")

    @property
    def cron(self) -> CronTable:
        return self.require("cron")

    @property
    def shell(self) -> Shell:
        return self.require("shell")


def local_registry(fs_root: str | None = None) -> CollaboratorRegistry:
    """Registry wired to the real tools on this host."""
    from hostplan.adapters.containers.docker import DockerComposeOrchestrator
    from hostplan.adapters.cron.crontab import CrontabTable
    from hostplan.adapters.firewall.ufw import UfwFirewall
    from hostplan.adapters.packages.apt import AptPackageManager
    from hostplan.adapters.services.systemd import SystemdServiceManager
    from hostplan.adapters.shell.command import LocalShell
    from hostplan.adapters.shell.filesystem import LocalFilesystem
    from hostplan.adapters.tls.certbot import CertbotIssuer

    registry = CollaboratorRegistry()
    registry.register("packages", AptPackageManager())
    registry.register("filesystem", LocalFilesystem(root=fs_root))
    registry.register("firewall", UfwFirewall())
    registry.register("services", SystemdServiceManager())
    registry.register("containers", DockerComposeOrchestrator())
    registry.register("certificates", CertbotIssuer())
    registry.register("cron", CrontabTable())
    registry.register("shell", LocalShell())
    return registry
