"""Deployment run - state of a single orchestration attempt."""

import asyncio
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..core.exceptions import OrchestratorError
from ..graph.models import LoadTestResult
from ..probes.prober import ProbeResult


class UnitStatus(str, Enum):
    """Per-unit lifecycle within a run."""

    PENDING = "Pending"
    APPLYING = "Applying"
    WAITING_READY = "WaitingReady"
    READY = "Ready"
    FAILED = "Failed"


class RunState(str, Enum):
    """Orchestration stages and outcomes."""

    PLANNING = "Planning"
    DEPLOYING = "Deploying"
    PROBING = "Probing"
    LOAD_TESTING = "LoadTesting"
    SUCCEEDED = "Succeeded"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self, 1)


TERMINAL_STATES = {
    RunState.SUCCEEDED,
    RunState.DEGRADED,
    RunState.FAILED,
    RunState.ABORTED,
}

EXIT_CODES = {
    RunState.SUCCEEDED: 0,
    RunState.FAILED: 1,
    RunState.DEGRADED: 2,
    RunState.ABORTED: 130,
}


def _now() -> str:
    return datetime.now().isoformat()


class ErrorRecord(BaseModel):
    """An error recorded against a unit or stage."""

    stage: str
    unit_id: Optional[str] = None
    code: str
    message: str

    @classmethod
    def from_exception(
        cls, stage: RunState, exc: Exception, unit_id: Optional[str] = None
    ) -> "ErrorRecord":
        if isinstance(exc, OrchestratorError):
            code, message = exc.code, exc.message
        else:
            code, message = type(exc).__name__, str(exc)
        return cls(stage=stage.value, unit_id=unit_id, code=code, message=message)


class UnitRecord(BaseModel):
    """Status history of one unit within a run."""

    unit_id: str
    status: UnitStatus = UnitStatus.PENDING
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    attempts: int = 0
    changed: bool = False
    ready_after: Optional[float] = None
    errors: List[ErrorRecord] = Field(default_factory=list)


class StateTransition(BaseModel):
    state: RunState
    at: str


class DeploymentRun:
    """One orchestration attempt, owned by the engine for its lifetime.

    Unit records are kept in deployment (topological) order. Status updates
    from concurrent unit tasks go through a single lock. Once the run is in
    a terminal state it can no longer change.
    """

    def __init__(self, graph_name: str, unit_order: List[str], run_id: Optional[str] = None):
        self.run_id = run_id or uuid.uuid4().hex
        self.graph_name = graph_name
        self.state = RunState.PLANNING
        self.history: List[StateTransition] = [StateTransition(state=self.state, at=_now())]
        self.units: Dict[str, UnitRecord] = {uid: UnitRecord(unit_id=uid) for uid in unit_order}
        self.application_order: List[str] = []
        self.probes: List[ProbeResult] = []
        self.load_test: Optional[LoadTestResult] = None
        self.load_test_violations: List[str] = []
        self.errors: List[ErrorRecord] = []
        self.started_at = _now()
        self.finished_at: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def is_finished(self) -> bool:
        return self.state.is_terminal

    def _check_mutable(self) -> None:
        if self.state.is_terminal:
            raise RuntimeError(f"Run {self.run_id} is {self.state.value} and immutable")

    def transition(self, state: RunState) -> None:
        """Move to a new stage or outcome."""
        self._check_mutable()
        self.state = state
        self.history.append(StateTransition(state=state, at=_now()))
        if state.is_terminal:
            self.finished_at = _now()

    def add_units(self, unit_order: List[str]) -> None:
        """Replace the unit records once the deployment order is known."""
        self._check_mutable()
        self.units = {uid: UnitRecord(unit_id=uid) for uid in unit_order}

    async def set_unit_status(
        self,
        unit_id: str,
        status: UnitStatus,
        error: Optional[ErrorRecord] = None,
        **fields: Any,
    ) -> None:
        """Update a unit record under the run lock."""
        async with self._lock:
            self._check_mutable()
            record = self.units[unit_id]
            record.status = status

            if status == UnitStatus.APPLYING and record.started_at is None:
                record.started_at = _now()
                self.application_order.append(unit_id)
            if status in (UnitStatus.READY, UnitStatus.FAILED):
                record.finished_at = _now()

            for name, value in fields.items():
                setattr(record, name, value)

            if error is not None:
                record.errors.append(error)
                self.errors.append(error)

    def record_error(self, error: ErrorRecord) -> None:
        self._check_mutable()
        self.errors.append(error)

    def units_with_status(self, status: UnitStatus) -> List[str]:
        return [uid for uid, record in self.units.items() if record.status == status]

    def _errors_in_unit_order(self) -> List[ErrorRecord]:
        position = {uid: i for i, uid in enumerate(self.units)}
        return sorted(
            self.errors,
            key=lambda e: position.get(e.unit_id, len(position)) if e.unit_id else len(position),
        )

    def to_report(self) -> Dict[str, Any]:
        """Serializable report: every unit in deployment order, every error."""
        return {
            "run_id": self.run_id,
            "graph": self.graph_name,
            "state": self.state.value,
            "exit_code": self.state.exit_code if self.state.is_terminal else None,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "history": [t.model_dump(mode="json") for t in self.history],
            "units": [r.model_dump(mode="json") for r in self.units.values()],
            "application_order": list(self.application_order),
            "probes": [p.model_dump(mode="json") for p in self.probes],
            "load_test": self.load_test.model_dump(mode="json") if self.load_test else None,
            "load_test_violations": list(self.load_test_violations),
            "errors": [e.model_dump(mode="json") for e in self._errors_in_unit_order()],
        }
