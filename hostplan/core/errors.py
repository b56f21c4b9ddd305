"""
Error taxonomy — every failure mode the engine distinguishes.

Plan-level errors (InvalidStepSpec, ConfigError, ConcurrentRunDetected)
are fatal before any mutation and surface at the CLI as exit codes.
Step-level errors (ProbeError, ExecutionFailed, StepTimeout,
RollbackFailed) never escape the plan runner: the prober and executor
turn them into results, and the runner alone decides what happens next.
"""

from __future__ import annotations


class HostplanError(Exception):
    """Base class for all hostplan errors."""


class ConfigError(HostplanError):
    """Raised when runtime settings are invalid or unreadable."""


class InvalidStepSpec(HostplanError):
    """Raised when a step or plan document is malformed."""

    def __init__(self, message: str, step_id: str | None = None):
        self.step_id = step_id
        if step_id:
            message = f"step '{step_id}': {message}"
        super().__init__(message)


class ProbeError(HostplanError):
    """The current state of a resource could not be determined."""


class ExecutionFailed(HostplanError):
    """A collaborator tool reported failure."""


class StepTimeout(HostplanError):
    """A probe or apply call exceeded its per-step deadline."""


class ConcurrentRunDetected(HostplanError):
    """Another run holds the run lock."""

    def __init__(self, lock_path: str, owner_pid: int | None = None):
        self.lock_path = lock_path
        self.owner_pid = owner_pid
        owner = f" (pid {owner_pid})" if owner_pid else ""
        super().__init__(f"Another run holds the lock at {lock_path}{owner}")


class RollbackFailed(HostplanError):
    """Undoing an applied step failed. Logged, never fatal to the unwind."""

    def __init__(self, step_id: str, reason: str):
        self.step_id = step_id
        self.reason = reason
        super().__init__(f"rollback of '{step_id}' failed: {reason}")
