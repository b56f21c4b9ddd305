"""
Command runner — the SINGLE PLACE where ``subprocess.run`` is called.

Every CLI-backed collaborator goes through ``run_command``. Logging,
timeouts and error shaping are centralised here.

Deadlines: the plan runner wraps each probe/apply in
``step_deadline(seconds)``. Any command started inside that block gets
at most the time remaining, so a per-step timeout bounds the whole
call group rather than each command separately.
"""

from __future__ import annotations

import contextvars
import logging
import os
import shutil
import subprocess
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from hostplan.adapters.base import Shell
from hostplan.core.errors import ExecutionFailed, StepTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300

_deadline: contextvars.ContextVar[float | None] = contextvars.ContextVar("hostplan_deadline", default=None)


class CommandFailed(ExecutionFailed):
    """A command exited non-zero, or could not be started."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = ""):
        self.args_ = list(args)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit {returncode}"
        super().__init__(f"{args[0] if args else '?'} failed (exit {returncode}): {detail}")


class CommandTimeout(StepTimeout):
    """A command outlived its deadline and was killed."""

    def __init__(self, args: Sequence[str], timeout: float):
        self.timeout = timeout
        super().__init__(f"Timeout: {' '.join(args)} exceeded {timeout:.0f}s")


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@contextmanager
def step_deadline(seconds: float | None) -> Iterator[None]:
    """Bound every command started inside the block by one deadline."""
    if seconds is None:
        yield
        return
    token = _deadline.set(time.monotonic() + seconds)
    try:
        yield
    finally:
        _deadline.reset(token)


def remaining_time(default: float | None = None) -> float | None:
    """Seconds left before the current step deadline (or ``default``)."""
    deadline = _deadline.get()
    if deadline is None:
        return default
    left = deadline - time.monotonic()
    return max(left, 0.0) if default is None else max(min(left, default), 0.0)


def run_command(
    args: Sequence[str],
    *,
    timeout: float | None = DEFAULT_TIMEOUT,
    input: str | None = None,
    env_overrides: Mapping[str, str] | None = None,
    cwd: str | None = None,
    check: bool = True,
) -> CommandResult:
    """Run a command and capture its output.

    Commands run in their own session so an interrupt delivered to the
    terminal reaches hostplan (which finishes the current step) and not
    the package manager halfway through a transaction.

    Raises:
        CommandTimeout: The deadline expired; the process was killed.
        CommandFailed: Non-zero exit (when ``check``), or the binary is missing.
    """
    args = [str(a) for a in args]
    budget = remaining_time(timeout)
    if budget is not None and budget <= 0:
        raise CommandTimeout(args, timeout or 0)

    env = None
    if env_overrides:
        env = os.environ.copy()
        env.update(env_overrides)

    logger.debug("Executing: %s (cwd=%s)", " ".join(args), cwd or ".")
    start = time.monotonic()

    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=budget,
            input=input,
            env=env,
            cwd=cwd,
            start_new_session=True,
        )
    except subprocess.TimeoutExpired:
        raise CommandTimeout(args, budget or 0) from None
    except FileNotFoundError:
        raise CommandFailed(args, 127, f"{args[0]}: command not found") from None

    elapsed_ms = int((time.monotonic() - start) * 1000)
    out = CommandResult(
        args=args,
        returncode=result.returncode,
        stdout=result.stdout.strip(),
        stderr=result.stderr.strip(),
        duration_ms=elapsed_ms,
    )

    if check and not out.ok:
        logger.debug("Command failed (exit %d): %s", out.returncode, out.stderr[-500:])
        raise CommandFailed(args, out.returncode, out.stderr or out.stdout)
    return out


class LocalShell(Shell):
    """Runs rollback commands through ``sh -c``."""

    @property
    def name(self) -> str:
        return "shell"

    def is_available(self) -> bool:
        return shutil.which("sh") is not None

    def run(self, command: str) -> str:
        return run_command(["sh", "-c", command]).stdout
