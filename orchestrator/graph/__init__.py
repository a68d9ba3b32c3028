"""Deployment graph: units, ordering constraints and graph files."""

from .dependency import DependencyGraph
from .loader import GraphLoader, LoadedGraph
from .models import (
    DeployableUnit,
    EndpointCheck,
    GraphDefinition,
    LoadTestResult,
    LoadTestSpec,
    ReadinessCheck,
    RunOverrides,
)

__all__ = [
    "DependencyGraph",
    "DeployableUnit",
    "EndpointCheck",
    "GraphDefinition",
    "GraphLoader",
    "LoadTestResult",
    "LoadTestSpec",
    "LoadedGraph",
    "ReadinessCheck",
    "RunOverrides",
]
