"""Deployment and validation orchestrator for local Kubernetes clusters."""

from .config import OrchestratorSettings, settings
from .core import (
    ApplyRejected,
    CoordinatorResponseError,
    CycleDetected,
    DependencyFailed,
    DuplicateUnit,
    GraphLoadError,
    NoWorkersConnected,
    OrchestratorError,
    ProbeFailed,
    ReadinessTimeout,
    RunAborted,
    TransientApplyError,
    UnknownDependency,
    ZeroThroughput,
)

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "OrchestratorSettings",
    "settings",
    # Exceptions
    "ApplyRejected",
    "CoordinatorResponseError",
    "CycleDetected",
    "DependencyFailed",
    "DuplicateUnit",
    "GraphLoadError",
    "NoWorkersConnected",
    "OrchestratorError",
    "ProbeFailed",
    "ReadinessTimeout",
    "RunAborted",
    "TransientApplyError",
    "UnknownDependency",
    "ZeroThroughput",
]
