"""
crontab adapter — scheduled job lines.

The whole table is read, edited in memory and piped back through
``crontab -``, which is how crontab itself expects edits to happen.
"""

from __future__ import annotations

import shutil

from hostplan.adapters.base import CronTable
from hostplan.adapters.shell.command import CommandFailed, run_command


class CrontabTable(CronTable):
    @property
    def name(self) -> str:
        return "crontab"

    def is_available(self) -> bool:
        return shutil.which("crontab") is not None

    def lines(self, user: str | None = None) -> list[str]:
        result = run_command(["crontab", *self._user(user), "-l"], timeout=30, check=False)
        if not result.ok:
            if "no crontab" in result.stderr.lower():
                return []
            raise CommandFailed(result.args, result.returncode, result.stderr)
        return [line for line in result.stdout.splitlines() if line.strip()]

    def add(self, line: str, user: str | None = None) -> str:
        current = self.lines(user)
        if line in current:
            return ""
        return self._install([*current, line], user)

    def remove(self, line: str, user: str | None = None) -> str:
        current = self.lines(user)
        return self._install([entry for entry in current if entry != line], user)

    def _install(self, lines: list[str], user: str | None) -> str:
        content = "\n".join(lines) + "\n" if lines else ""
        return run_command(["crontab", *self._user(user), "-"], input=content, timeout=30).stdout

    @staticmethod
    def _user(user: str | None) -> list[str]:
        return ["-u", user] if user else []
