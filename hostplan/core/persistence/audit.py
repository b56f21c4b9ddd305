"""
Audit ledger — one summary line per run, appended to
``<state_dir>/audit.ndjson``.

Checkpoint logs hold per-step detail and live one per run; the ledger
is the host-wide history (`hostplan runs list` joins the two). Dry runs
leave no entry. Lines are only ever appended.
"""

from __future__ import annotations

import getpass
import json
import logging
import socket
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_FILE = "audit.ndjson"


def _whoami() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


class AuditEntry(BaseModel):
    """Summary of one finished run."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    plan: str = ""
    host: str = Field(default_factory=socket.gethostname)
    user: str = Field(default_factory=_whoami)

    status: str = ""               # ok | failed | cancelled
    steps_total: int = 0
    counts: dict[str, int] = Field(default_factory=dict)
    rolled_back: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    errors: list[str] = Field(default_factory=list)


class AuditWriter:
    """Appends to, and reads back, one ledger file."""

    def __init__(self, path: Path | None = None, state_dir: Path | None = None):
        if path is None:
            path = (state_dir or Path(".")) / DEFAULT_AUDIT_FILE
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        """Append ``entry``. The run has already happened, so I/O errors are only logged."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as ledger:
                ledger.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Failed to write audit entry for %s: %s", entry.run_id, e)
            return
        logger.debug("Audit: %s %s", entry.run_id, entry.status)

    def read_all(self) -> list[AuditEntry]:
        """Every readable entry, oldest first."""
        return list(self._entries())

    def read_recent(self, n: int = 20) -> list[AuditEntry]:
        return self.read_all()[-n:]

    def _entries(self) -> Iterator[AuditEntry]:
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error("Cannot read audit ledger %s: %s", self._path, e)
            return

        for number, raw in enumerate(lines, start=1):
            if not raw.strip():
                continue
            try:
                yield AuditEntry.model_validate(json.loads(raw))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning("Ignoring bad audit line %d: %s", number, e)
