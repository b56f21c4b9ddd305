"""
Collaborator base — the capability contracts between engine and host tools.

The engine never talks to apt, ufw, systemctl or docker directly. It
talks to these capabilities, each implemented by an adapter that wraps
one external tool (or, for tests and ``--mock`` runs, by the in-memory
MockHost).

Unlike the engine's own results, collaborator methods raise on failure
(CommandFailed, CommandTimeout, OSError). The prober and executor are
the single place those exceptions are caught and turned into data.

To add a new collaborator:
    1. Subclass the matching capability
    2. Implement name, is_available and the capability methods
    3. Register it in the CollaboratorRegistry
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Literal

ServiceStatus = Literal["running", "stopped", "unknown"]


class Collaborator(ABC):
    """Abstract base class for all collaborator adapters."""

    @property
    @abstractmethod
    def name(self) -> str:
        """The adapter identifier (e.g., 'apt', 'ufw', 'systemd')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the underlying tool exists on this host.

        Should be fast and never raise.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class PackageManager(Collaborator):
    @abstractmethod
    def is_installed(self, package: str) -> bool: ...

    @abstractmethod
    def install(self, packages: list[str], update: bool = False) -> str: ...

    @abstractmethod
    def remove(self, packages: list[str]) -> str: ...


class Filesystem(Collaborator):
    @abstractmethod
    def read(self, path: str) -> bytes | None:
        """File content, or None when the file does not exist."""

    @abstractmethod
    def write(self, path: str, data: bytes, mode: int | None = None) -> None: ...

    @abstractmethod
    def remove(self, path: str) -> None: ...

    @abstractmethod
    def mode(self, path: str) -> int | None:
        """Permission bits, or None when the file does not exist."""


class Firewall(Collaborator):
    @abstractmethod
    def list_rules(self) -> set[str]:
        """Allow rules in ``port/proto`` or application-profile form."""

    @abstractmethod
    def allow(self, rule: str) -> str: ...

    @abstractmethod
    def delete(self, rule: str) -> str: ...

    @abstractmethod
    def is_active(self) -> bool: ...

    @abstractmethod
    def enable(self) -> str: ...


class ServiceManager(Collaborator):
    @abstractmethod
    def status(self, name: str) -> ServiceStatus: ...

    @abstractmethod
    def is_enabled(self, name: str) -> bool: ...

    @abstractmethod
    def enable(self, name: str) -> str: ...

    @abstractmethod
    def disable(self, name: str) -> str: ...

    @abstractmethod
    def restart(self, name: str) -> str: ...

    @abstractmethod
    def stop(self, name: str) -> str: ...


class ContainerOrchestrator(Collaborator):
    @abstractmethod
    def services(self, compose_file: str, project_dir: str | None = None) -> set[str]:
        """Service names declared in the compose file."""

    @abstractmethod
    def running(self, compose_file: str, project_dir: str | None = None) -> set[str]:
        """Service names currently running for the compose project."""

    @abstractmethod
    def up(self, compose_file: str, env: Mapping[str, str] | None = None,
           project_dir: str | None = None) -> str: ...

    @abstractmethod
    def down(self, compose_file: str, project_dir: str | None = None) -> str: ...


class CertificateIssuer(Collaborator):
    @abstractmethod
    def has_certificate(self, domain: str) -> bool: ...

    @abstractmethod
    def issue(self, domain: str, email: str, plugin: str = "nginx") -> str: ...

    @abstractmethod
    def revoke(self, domain: str) -> str: ...


class CronTable(Collaborator):
    @abstractmethod
    def lines(self, user: str | None = None) -> list[str]: ...

    @abstractmethod
    def add(self, line: str, user: str | None = None) -> str: ...

    @abstractmethod
    def remove(self, line: str, user: str | None = None) -> str: ...


class Shell(Collaborator):
    """Runs explicit rollback commands declared in a plan."""

    @abstractmethod
    def run(self, command: str) -> str: ...
