"""
Runtime settings — where state lives and how runs behave by default.

Resolved in precedence order:
    defaults  <  hostplan.yml  <  HOSTPLAN_* env vars  <  CLI flags

``hostplan.yml`` is optional; it is searched for from the current
directory upward, or given explicitly with ``--config``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from hostplan.core.errors import ConfigError
from hostplan.core.models.step import FailurePolicy

logger = logging.getLogger(__name__)

SETTINGS_FILE = "hostplan.yml"
SYSTEM_STATE_DIR = Path("/var/lib/hostplan")
USER_STATE_DIR = Path("~/.local/share/hostplan")

# env var → settings field
_ENV_FIELDS = {
    "HOSTPLAN_STATE_DIR": "state_dir",
    "HOSTPLAN_LOCK_PATH": "lock_path",
    "HOSTPLAN_TIMEOUT": "default_timeout",
    "HOSTPLAN_ON_FAILURE": "on_failure",
    "HOSTPLAN_REQUIRE_ROOT": "require_root",
}


def default_state_dir() -> Path:
    """System state dir when running as root, else a per-user one."""
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return SYSTEM_STATE_DIR
    return USER_STATE_DIR.expanduser()


class Settings(BaseModel):
    """Validated runtime settings."""

    model_config = ConfigDict(extra="forbid")

    state_dir: Path = Field(default=None, validate_default=True)
    lock_path: Path | None = None
    default_timeout: float = 600.0
    on_failure: FailurePolicy | None = None
    require_root: bool = True

    @field_validator("state_dir", mode="before")
    @classmethod
    def _default_state_dir(cls, v: Any) -> Any:
        return default_state_dir() if v in (None, "") else Path(str(v)).expanduser()

    @field_validator("default_timeout")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("default_timeout must be positive")
        return v

    @property
    def effective_lock_path(self) -> Path:
        return self.lock_path or self.state_dir / "hostplan.lock"

    @property
    def audit_path(self) -> Path:
        return self.state_dir / "audit.ndjson"


def find_settings_file(start_dir: Path | None = None) -> Path | None:
    """Search for hostplan.yml starting from the given directory, walking up."""
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / SETTINGS_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_settings(
    path: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Resolve settings from file, environment and explicit overrides.

    Args:
        path: Explicit settings file. If None, searches upward from cwd.
        overrides: Values from CLI flags; ``None`` values are ignored.
        environ: Environment mapping (default: ``os.environ``).

    Raises:
        ConfigError: The settings file is unreadable or a value is invalid.
    """
    data: dict[str, Any] = {}

    source = path or find_settings_file()
    if path is not None and not path.is_file():
        raise ConfigError(f"Settings file not found: {path}")
    if source is not None:
        data.update(_read_settings_file(source))

    env = os.environ if environ is None else environ
    for var, key in _ENV_FIELDS.items():
        if env.get(var):
            data[key] = env[var]

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        err = e.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        raise ConfigError(f"Invalid setting '{loc}': {err.get('msg', 'invalid value')}") from e

    logger.debug("Settings: state_dir=%s timeout=%s", settings.state_dir, settings.default_timeout)
    return settings


def _read_settings_file(path: Path) -> dict[str, Any]:
    logger.debug("Loading settings from %s", path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data
