"""Orchestration engine, run state and run history."""

from .history import RunHistory, RunRecord
from .orchestrator import OrchestrationEngine
from .run import (
    DeploymentRun,
    ErrorRecord,
    RunState,
    StateTransition,
    UnitRecord,
    UnitStatus,
)

__all__ = [
    "DeploymentRun",
    "ErrorRecord",
    "OrchestrationEngine",
    "RunHistory",
    "RunRecord",
    "RunState",
    "StateTransition",
    "UnitRecord",
    "UnitStatus",
]
