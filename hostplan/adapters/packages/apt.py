"""
APT adapter — Debian/Ubuntu package database and installs.

Presence is read from dpkg's database (``dpkg-query``); installs and
removals go through ``apt-get`` in non-interactive mode.
"""

from __future__ import annotations

import logging
import shutil

from hostplan.adapters.base import PackageManager
from hostplan.adapters.shell.command import CommandFailed, run_command

logger = logging.getLogger(__name__)

_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
_INSTALL_TIMEOUT = 1800


class AptPackageManager(PackageManager):
    @property
    def name(self) -> str:
        return "apt"

    def is_available(self) -> bool:
        return shutil.which("apt-get") is not None and shutil.which("dpkg-query") is not None

    def is_installed(self, package: str) -> bool:
        result = run_command(
            ["dpkg-query", "-W", "-f=${Status}", package],
            timeout=30,
            check=False,
        )
        # Unknown packages exit 1; anything else non-zero is a real problem.
        if result.returncode not in (0, 1):
            raise CommandFailed(result.args, result.returncode, result.stderr)
        return result.ok and result.stdout.endswith("install ok installed")

    def install(self, packages: list[str], update: bool = False) -> str:
        if update:
            run_command(["apt-get", "update"], timeout=_INSTALL_TIMEOUT, env_overrides=_APT_ENV)
        logger.info("apt-get install %s", " ".join(packages))
        result = run_command(
            ["apt-get", "install", "-y", *packages],
            timeout=_INSTALL_TIMEOUT,
            env_overrides=_APT_ENV,
        )
        return result.stdout[-2000:]

    def remove(self, packages: list[str]) -> str:
        logger.info("apt-get remove %s", " ".join(packages))
        result = run_command(
            ["apt-get", "remove", "-y", *packages],
            timeout=_INSTALL_TIMEOUT,
            env_overrides=_APT_ENV,
        )
        return result.stdout[-2000:]
