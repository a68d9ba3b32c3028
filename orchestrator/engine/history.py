"""Run history - append-only record of finished orchestration runs.

Each finished run is appended as one JSON line to ``runs.jsonl`` in the
state directory. Existing lines are never rewritten, so the file doubles as
an audit log of every deployment attempt.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from ..config import settings
from .run import DeploymentRun

logger = logging.getLogger(__name__)


class RunRecord(BaseModel):
    """Persisted summary and full report of one run."""

    run_id: str
    graph: str
    state: str
    started_at: str
    finished_at: str | None = None
    recorded_at: str
    report: dict[str, Any]


class RunHistory:
    """Append-only store of run records keyed by run id."""

    def __init__(self, state_dir: Path | None = None):
        """Initialize run history.

        Args:
            state_dir: Directory for the history file. Defaults to settings.state_dir.
        """
        self.state_dir = Path(state_dir or settings.state_dir).expanduser()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.runs_file = self.state_dir / "runs.jsonl"

    def append(self, run: DeploymentRun) -> RunRecord:
        """Append a finished run.

        Args:
            run: Run in a terminal state

        Returns:
            The stored record
        """
        if not run.is_finished:
            raise ValueError(f"Run {run.run_id} is still {run.state.value}")

        record = RunRecord(
            run_id=run.run_id,
            graph=run.graph_name,
            state=run.state.value,
            started_at=run.started_at,
            finished_at=run.finished_at,
            recorded_at=datetime.now().isoformat(),
            report=run.to_report(),
        )

        with open(self.runs_file, "a") as f:
            f.write(record.model_dump_json() + "\n")

        logger.info(f"Recorded run {run.run_id} ({run.state.value}) in {self.runs_file}")
        return record

    def _records(self) -> list[RunRecord]:
        if not self.runs_file.exists():
            return []

        records = []
        for lineno, line in enumerate(self.runs_file.read_text().splitlines(), start=1):
            if not line.strip():
                continue
            try:
                records.append(RunRecord(**json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Skipping corrupt history line {lineno}: {e}")
        return records

    def get(self, run_id: str) -> RunRecord | None:
        """Get a run by id (a unique prefix is accepted).

        Returns:
            Latest record for that run, or None if not found
        """
        matches = [r for r in self._records() if r.run_id == run_id]
        if not matches:
            prefixed = {r.run_id for r in self._records() if r.run_id.startswith(run_id)}
            if len(prefixed) == 1:
                matches = [r for r in self._records() if r.run_id in prefixed]
        return matches[-1] if matches else None

    def list_runs(self, state: str | None = None, limit: int = 50) -> list[RunRecord]:
        """List runs newest first, optionally filtered by final state."""
        records = [r for r in self._records() if state is None or r.state == state]
        records.reverse()
        return records[:limit]
