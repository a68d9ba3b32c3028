"""Pydantic models for deployment graph definitions."""

import copy
import hashlib
import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Set

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ============================================================================
# Readiness and endpoint checks
# ============================================================================


class ReadinessCheck(BaseModel):
    """How to decide that a deployed unit is serving traffic.

    ``replicas`` compares ready replicas of a workload against the expected
    count, ``http`` expects a status code from a probe URL, ``exists`` only
    needs the resource to be present and ``none`` is satisfied immediately.
    """

    type: Literal["replicas", "http", "exists", "none"] = Field(
        "replicas", description="Readiness predicate type"
    )
    kind: str = Field("Deployment", description="Workload kind to inspect")
    name: Optional[str] = Field(
        None, description="Workload name (defaults to the unit id)"
    )
    replicas: Optional[int] = Field(
        None, description="Expected ready replicas (defaults to spec.replicas)"
    )
    url: Optional[str] = Field(None, description="Probe URL for http checks")
    expected_status: int = Field(200, description="Expected HTTP status")
    timeout: Optional[float] = Field(
        None, description="Per-unit readiness timeout override in seconds"
    )

    @model_validator(mode="after")
    def validate_http_url(self) -> "ReadinessCheck":
        """HTTP readiness needs a URL."""
        if self.type == "http" and not self.url:
            raise ValueError("HTTP readiness check requires 'url'")
        return self


class EndpointCheck(BaseModel):
    """Observability backend that must be reachable once a unit is live."""

    name: str = Field(..., description="Display name of the endpoint")
    type: Literal[
        "http", "prometheus_target", "loki_ready", "jaeger_service", "grafana_health"
    ] = Field("http", description="Backend-specific probe type")
    url: str = Field(..., description="Base URL of the backend")
    expected_status: int = Field(200, description="Expected HTTP status for http probes")
    target: Optional[str] = Field(
        None, description="Scrape job expected in Prometheus service discovery"
    )
    service: Optional[str] = Field(
        None, description="Service name expected in Jaeger"
    )
    required: bool = Field(
        True, description="Unreachable required endpoints fail the run"
    )

    @model_validator(mode="after")
    def validate_subject(self) -> "EndpointCheck":
        """Backend queries need a subject to look for."""
        if self.type == "prometheus_target" and not self.target:
            raise ValueError("prometheus_target probe requires 'target'")
        if self.type == "jaeger_service" and not self.service:
            raise ValueError("jaeger_service probe requires 'service'")
        return self


# ============================================================================
# Deployable unit
# ============================================================================


class DeployableUnit(BaseModel):
    """One service plus its manifests, subject to ordering and readiness."""

    id: str = Field(..., description="Unique unit identifier")
    manifests: List[str] = Field(
        default_factory=list, description="Manifest file paths"
    )
    inline: List[Dict[str, Any]] = Field(
        default_factory=list, description="Inline manifest documents"
    )
    depends_on: Set[str] = Field(
        default_factory=set, description="Ids of units that must be ready first"
    )
    namespace: str = Field("default", description="Target namespace")
    readiness: ReadinessCheck = Field(
        default_factory=ReadinessCheck, description="Readiness predicate"
    )
    endpoint: Optional[EndpointCheck] = Field(
        None, description="Observability endpoint to probe after deployment"
    )

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Unit ids are non-empty and free of whitespace."""
        if not v or any(c.isspace() for c in v):
            raise ValueError("Unit id must be non-empty and contain no whitespace")
        return v

    @model_validator(mode="after")
    def validate_has_manifests(self) -> "DeployableUnit":
        """A unit must declare something to apply."""
        if not self.manifests and not self.inline:
            raise ValueError(f"Unit '{self.id}' declares no manifests")
        return self

    @property
    def workload_name(self) -> str:
        return self.readiness.name or self.id

    def load_manifests(self, base_dir: Optional[Path] = None) -> List[Dict[str, Any]]:
        """Parse every manifest document of this unit.

        File paths are resolved against ``base_dir``; multi-document YAML
        files contribute every non-empty document. Documents without a
        namespace get the unit's namespace.

        Args:
            base_dir: Directory manifest paths are relative to

        Returns:
            List of manifest documents

        Raises:
            OSError: If a manifest file cannot be read
            yaml.YAMLError: If a manifest is not valid YAML
            ValueError: If a document's metadata is not a mapping
        """
        base_dir = base_dir or Path.cwd()
        documents: List[Dict[str, Any]] = []

        for manifest in self.manifests:
            path = Path(manifest)
            if not path.is_absolute():
                path = base_dir / path
            with open(path) as f:
                documents.extend(doc for doc in yaml.safe_load_all(f) if doc)

        documents.extend(copy.deepcopy(doc) for doc in self.inline)

        for doc in documents:
            if not isinstance(doc, dict):
                continue
            metadata = doc.get("metadata")
            if metadata is None:
                metadata = doc["metadata"] = {}
            elif not isinstance(metadata, dict):
                raise ValueError(
                    f"Unit '{self.id}': {doc.get('kind', 'manifest')} metadata must be a mapping"
                )
            metadata.setdefault("namespace", self.namespace)

        return documents

    def fingerprint(self, base_dir: Optional[Path] = None) -> str:
        """Stable digest of the unit's manifests, used to detect changes."""
        canonical = json.dumps(
            self.load_manifests(base_dir), sort_keys=True, default=str
        )
        return hashlib.sha256(canonical.encode()).hexdigest()


# ============================================================================
# Load testing
# ============================================================================


class LoadTestSpec(BaseModel):
    """Distributed load-test run and its pass/fail thresholds."""

    target_url: str = Field(..., description="Host the simulated users hit")
    coordinator_url: str = Field(
        "http://localhost:8089", description="Load-generator coordinator web API"
    )
    users: int = Field(10, gt=0, description="Total simulated users")
    spawn_rate: float = Field(1.0, gt=0, description="Users started per second")
    duration: float = Field(60.0, gt=0, description="Run duration in seconds")
    max_error_rate: float = Field(
        0.01, ge=0, le=1, description="Maximum tolerated failure ratio"
    )
    max_p95_ms: float = Field(
        1000.0, gt=0, description="Maximum tolerated p95 latency in ms"
    )
    connect_timeout: Optional[float] = Field(
        None, gt=0, description="Seconds to wait for workers to register"
    )


class LoadTestResult(BaseModel):
    """Aggregated load-test statistics. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    total_requests: int
    total_failures: int
    rps: float
    error_rate: float
    avg_ms: float = 0.0
    p50_ms: float = 0.0
    p95_ms: Optional[float] = None
    p99_ms: float = 0.0
    worker_contributions: Dict[str, int] = Field(default_factory=dict)
    duration: float = 0.0

    @property
    def successes(self) -> int:
        return self.total_requests - self.total_failures


# ============================================================================
# Graph definition
# ============================================================================


class RunOverrides(BaseModel):
    """Per-graph overrides of the global settings."""

    readiness_timeout: Optional[float] = Field(None, gt=0)
    poll_interval: Optional[float] = Field(None, gt=0)
    max_parallelism: Optional[int] = Field(None, gt=0)


class GraphDefinition(BaseModel):
    """Complete deployment graph file."""

    name: str = Field(..., description="Graph name")
    description: str = Field("", description="Human-readable description")
    units: List[DeployableUnit] = Field(..., description="Deployable units")
    loadtest: Optional[LoadTestSpec] = Field(
        None, description="Load test to run once every unit is live"
    )
    settings: RunOverrides = Field(
        default_factory=RunOverrides, description="Run setting overrides"
    )

    @field_validator("units")
    @classmethod
    def validate_not_empty(cls, v: List[DeployableUnit]) -> List[DeployableUnit]:
        """A graph needs at least one unit."""
        if not v:
            raise ValueError("Graph must define at least one unit")
        return v

    def get_unit(self, unit_id: str) -> Optional[DeployableUnit]:
        """Get unit by ID."""
        for unit in self.units:
            if unit.id == unit_id:
                return unit
        return None
