"""Applying units to the cluster and waiting for them to become ready."""

from .applier import ApplyResult, ResourceApplier, backoff_delay
from .readiness import ReadinessGate, ReadinessResult

__all__ = [
    "ApplyResult",
    "ReadinessGate",
    "ReadinessResult",
    "ResourceApplier",
    "backoff_delay",
]
