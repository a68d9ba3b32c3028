"""Core exceptions shared by every orchestrator component."""

from .cancel import CancelToken
from .exceptions import (
    ApplyRejected,
    ClusterAPIError,
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

__all__ = [
    "CancelToken",
    "ApplyRejected",
    "ClusterAPIError",
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
