"""
UFW adapter — host firewall rules.

Rules are read with ``ufw show added``, which lists user rules whether
or not the firewall is currently enabled, so a rule added before
``ufw enable`` still probes as present.
"""

from __future__ import annotations

import shutil

from hostplan.adapters.base import Firewall
from hostplan.adapters.shell.command import run_command

_ALLOW_PREFIX = "ufw allow "


def rule_text(port: int | str, proto: str = "tcp") -> str:
    """Canonical rule text: ``80/tcp``, ``53`` (any proto) or an app profile."""
    text = str(port)
    if text.isdigit():
        return text if proto == "any" else f"{text}/{proto}"
    return text


class UfwFirewall(Firewall):
    @property
    def name(self) -> str:
        return "ufw"

    def is_available(self) -> bool:
        return shutil.which("ufw") is not None

    def list_rules(self) -> set[str]:
        result = run_command(["ufw", "show", "added"], timeout=30)
        rules: set[str] = set()
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.startswith(_ALLOW_PREFIX):
                rules.add(line[len(_ALLOW_PREFIX):].strip())
        return rules

    def allow(self, rule: str) -> str:
        return run_command(["ufw", "allow", rule], timeout=60).stdout

    def delete(self, rule: str) -> str:
        return run_command(["ufw", "delete", "allow", rule], timeout=60).stdout

    def is_active(self) -> bool:
        result = run_command(["ufw", "status"], timeout=30)
        first = result.stdout.splitlines()[0] if result.stdout else ""
        return first.strip().lower() == "status: active"

    def enable(self) -> str:
        return run_command(["ufw", "--force", "enable"], timeout=60).stdout
