"""
systemd adapter — service status and lifecycle.

Read-only queries (``is-active``, ``is-enabled``) use their exit status
as an answer rather than an error; only the mutating verbs fail loudly.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from hostplan.adapters.base import ServiceManager, ServiceStatus
from hostplan.adapters.shell.command import run_command

_STOPPED = {"inactive", "failed", "deactivating"}
_RUNNING = {"active", "reloading", "activating"}


def detect_init_system() -> str:
    """Detect the init system (systemd, openrc, initd, or unknown)."""
    if Path("/run/systemd/system").exists():
        return "systemd"
    if shutil.which("rc-service"):
        return "openrc"
    if Path("/etc/init.d").exists():
        return "initd"
    return "unknown"


class SystemdServiceManager(ServiceManager):
    @property
    def name(self) -> str:
        return "systemd"

    def is_available(self) -> bool:
        return shutil.which("systemctl") is not None and detect_init_system() == "systemd"

    def status(self, name: str) -> ServiceStatus:
        result = run_command(["systemctl", "is-active", name], timeout=30, check=False)
        state = result.stdout.strip()
        if state in _RUNNING:
            return "running"
        if state in _STOPPED:
            return "stopped"
        return "unknown"

    def is_enabled(self, name: str) -> bool:
        result = run_command(["systemctl", "is-enabled", name], timeout=30, check=False)
        return result.stdout.strip() in ("enabled", "enabled-runtime", "alias", "static")

    def enable(self, name: str) -> str:
        run_command(["systemctl", "daemon-reload"], timeout=60)
        return run_command(["systemctl", "enable", name], timeout=60).stderr

    def disable(self, name: str) -> str:
        return run_command(["systemctl", "disable", name], timeout=60).stderr

    def restart(self, name: str) -> str:
        return run_command(["systemctl", "restart", name], timeout=120).stdout

    def stop(self, name: str) -> str:
        return run_command(["systemctl", "stop", name], timeout=120).stdout
