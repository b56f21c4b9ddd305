"""
Docker Compose adapter — container group operations.

Uses the ``docker compose`` CLI plugin — never the Docker API directly.
Variables passed to ``up`` reach compose through the child process
environment only; hostplan's own environment is never modified.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Mapping

from hostplan.adapters.base import ContainerOrchestrator
from hostplan.adapters.shell.command import run_command

logger = logging.getLogger(__name__)

_UP_TIMEOUT = 900


class DockerComposeOrchestrator(ContainerOrchestrator):
    @property
    def name(self) -> str:
        return "docker"

    def is_available(self) -> bool:
        return shutil.which("docker") is not None

    def services(self, compose_file: str, project_dir: str | None = None) -> set[str]:
        result = run_command(self._compose(compose_file, project_dir, "config", "--services"), timeout=60)
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def running(self, compose_file: str, project_dir: str | None = None) -> set[str]:
        result = run_command(
            self._compose(compose_file, project_dir, "ps", "--services", "--status", "running"),
            timeout=60,
        )
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def up(self, compose_file: str, env: Mapping[str, str] | None = None,
           project_dir: str | None = None) -> str:
        logger.info("docker compose -f %s up -d", compose_file)
        result = run_command(
            self._compose(compose_file, project_dir, "up", "-d", "--remove-orphans"),
            timeout=_UP_TIMEOUT,
            env_overrides=dict(env or {}),
        )
        return result.stderr or result.stdout

    def down(self, compose_file: str, project_dir: str | None = None) -> str:
        result = run_command(self._compose(compose_file, project_dir, "down"), timeout=300)
        return result.stderr or result.stdout

    def _compose(self, compose_file: str, project_dir: str | None, *args: str) -> list[str]:
        cmd = ["docker", "compose", "-f", compose_file]
        if project_dir:
            cmd += ["--project-directory", project_dir]
        return [*cmd, *args]
