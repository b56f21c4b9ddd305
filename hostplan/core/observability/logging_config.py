"""
Logging setup for the hostplan CLI.

main.py calls ``setup_logging`` once per invocation; every module logs
through ``logging.getLogger(__name__)`` and inherits it.

Console level, highest precedence first:
    --debug  >  --verbose  >  --quiet  >  HOSTPLAN_LOG_LEVEL  >  WARNING

``HOSTPLAN_LOG_FILE`` adds a provisioning transcript on the host (the
file is appended to, its directory created), at ``HOSTPLAN_LOG_FILE_LEVEL``
or the console level.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# (format, datefmt) for the console, by the most verbose level it covers
_CONSOLE_FORMATS: tuple[tuple[int, str, str | None], ...] = (
    (logging.DEBUG, "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d  %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s %(message)s", "%H:%M:%S"),
)
_CONSOLE_DEFAULT = "%(message)s"

_TRANSCRIPT_FMT = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"
_TRANSCRIPT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """(Re)configure the root logger.

    Args:
        level: Console level name.
        log_file: Transcript path, appended to.
        log_file_level: Transcript level name; defaults to ``level``.
    """
    console_level = _parse_level(level)
    handlers: list[logging.Handler] = [_console_handler(console_level)]
    root_level = console_level

    if log_file:
        transcript_level = _parse_level(log_file_level) if log_file_level else console_level
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        transcript = logging.FileHandler(path, mode="a", encoding="utf-8")
        transcript.setLevel(transcript_level)
        transcript.setFormatter(logging.Formatter(_TRANSCRIPT_FMT, datefmt=_TRANSCRIPT_DATEFMT))
        handlers.append(transcript)
        root_level = min(root_level, transcript_level)

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(root_level)

    # Handler errors never propagate into a run.
    logging.raiseExceptions = False


def resolve_level(debug: bool = False, verbose: bool = False, quiet: bool = False,
                  env_level: str | None = None) -> str:
    """Pick the console level from CLI flags, falling back to the env var."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return env_level or "WARNING"


def _console_handler(level: int) -> logging.Handler:
    fmt, datefmt = _CONSOLE_DEFAULT, None
    for threshold, candidate, candidate_datefmt in _CONSOLE_FORMATS:
        if level <= threshold:
            fmt, datefmt = candidate, candidate_datefmt
            break
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _parse_level(name: str | None) -> int:
    """Level name to its numeric value; unknown names mean WARNING."""
    value = logging.getLevelName(name.upper()) if name else None
    return value if isinstance(value, int) else logging.WARNING
