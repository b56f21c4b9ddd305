"""
Checkpoint log — append-only record of terminal step outcomes.

One NDJSON file per run at ``<state_dir>/runs/<run_id>/checkpoint.ndjson``.
Each append is flushed and fsynced before the runner continues, so a
crash never loses a record the runner already acted on. Rollback walks
the log strictly in reverse.

A log created without a path keeps its records in memory only; dry
runs use that form so they leave nothing behind on disk.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from hostplan.core.models.record import ExecutionRecord, StepOutcome

logger = logging.getLogger(__name__)

RUNS_DIR = "runs"
CHECKPOINT_FILE = "checkpoint.ndjson"


def run_dir(state_dir: Path, run_id: str) -> Path:
    return state_dir / RUNS_DIR / run_id


def checkpoint_path(state_dir: Path, run_id: str) -> Path:
    return run_dir(state_dir, run_id) / CHECKPOINT_FILE


class CheckpointLog:
    """Append-only, durable execution record for one run."""

    def __init__(self, path: Path | None = None):
        self._path = path
        self._records: list[ExecutionRecord] = []

    @classmethod
    def for_run(cls, state_dir: Path, run_id: str) -> CheckpointLog:
        return cls(checkpoint_path(state_dir, run_id))

    @classmethod
    def open(cls, path: Path) -> CheckpointLog:
        """Load an existing log from disk."""
        log = cls(path)
        log._records = log._read()
        return log

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def records(self) -> list[ExecutionRecord]:
        return list(self._records)

    def append(self, record: ExecutionRecord) -> None:
        """Persist one record, durably, before returning."""
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n"
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        self._records.append(record)
        logger.debug("Checkpoint: %s %s", record.step_id, record.outcome.value)

    def applied_in_reverse(self) -> list[ExecutionRecord]:
        """Applied entries, newest first, each step at most once."""
        seen: set[str] = set()
        result = []
        for record in reversed(self._records):
            if record.outcome is StepOutcome.APPLIED and record.step_id not in seen:
                seen.add(record.step_id)
                result.append(record)
        return result

    def _read(self) -> list[ExecutionRecord]:
        if self._path is None or not self._path.is_file():
            return []

        records = []
        with self._path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(ExecutionRecord.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValueError) as e:
                    logger.warning("Skipping corrupt checkpoint entry at line %d: %s", line_num, e)
        return records


def list_runs(state_dir: Path) -> list[str]:
    """Run ids with a checkpoint log, oldest first."""
    root = state_dir / RUNS_DIR
    if not root.is_dir():
        return []
    return sorted(p.parent.name for p in root.glob(f"*/{CHECKPOINT_FILE}"))
