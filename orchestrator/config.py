"""Centralized configuration for the deployment orchestrator.

Uses pydantic-settings for environment variable loading and validation.
Every setting can be overridden with an ``ORCH_``-prefixed environment
variable or a ``.env`` file. Graph files may override the run-level
timeouts and parallelism per run.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Settings for orchestration runs.

    Environment variables:
        ORCH_POLL_INTERVAL: Readiness poll interval in seconds
        ORCH_READINESS_TIMEOUT: Default per-unit readiness timeout in seconds
        ORCH_MAX_PARALLELISM: Upper bound on concurrent unit deployments
        ORCH_APPLY_BACKOFF_BASE: First retry delay for transient apply errors
        ORCH_APPLY_BACKOFF_CAP: Maximum retry delay for transient apply errors
        ORCH_APPLY_MAX_ATTEMPTS: Apply attempts before a unit fails
        ORCH_API_RATE_LIMIT: Cluster API requests per second
        ORCH_API_BURST: Cluster API burst size
        ORCH_PROBE_TIMEOUT: HTTP timeout for health probes
        ORCH_WORKER_CONNECT_TIMEOUT: Seconds to wait for load-test workers
        ORCH_LOADTEST_POLL_INTERVAL: Load-test coordinator poll interval
        ORCH_STATE_DIR: Directory holding the run history
        ORCH_KUBE_CONTEXT: kubeconfig context (default: current context)
        ORCH_FIELD_MANAGER: Field manager name for server-side apply
        ORCH_LOG_LEVEL: Logging level
        ORCH_LOG_JSON: Enable JSON log format
        ORCH_OTEL_ENABLED: Enable OpenTelemetry
        ORCH_OTEL_ENDPOINT: OTLP collector endpoint
    """

    model_config = SettingsConfigDict(
        env_prefix="ORCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Readiness
    poll_interval: float = Field(
        default=2.0,
        description="Readiness poll interval in seconds",
    )
    readiness_timeout: float = Field(
        default=300.0,
        description="Default per-unit readiness timeout in seconds",
    )
    max_parallelism: int = Field(
        default=8,
        description="Upper bound on concurrently deployed units",
    )

    # Apply retries
    apply_backoff_base: float = Field(
        default=1.0,
        description="First retry delay for transient apply errors",
    )
    apply_backoff_cap: float = Field(
        default=30.0,
        description="Maximum retry delay for transient apply errors",
    )
    apply_max_attempts: int = Field(
        default=5,
        description="Apply attempts before a unit is marked failed",
    )

    # Cluster API client
    api_rate_limit: float = Field(
        default=10.0,
        description="Cluster API requests per second",
    )
    api_burst: int = Field(
        default=20,
        description="Cluster API burst size",
    )
    kube_context: str | None = Field(
        default=None,
        description="kubeconfig context to use",
    )
    field_manager: str = Field(
        default="orchestrator",
        description="Field manager name for server-side apply",
    )

    # Probes and load tests
    probe_timeout: float = Field(
        default=5.0,
        description="HTTP timeout for health probes in seconds",
    )
    worker_connect_timeout: float = Field(
        default=30.0,
        description="Seconds to wait for load-test workers to register",
    )
    loadtest_poll_interval: float = Field(
        default=2.0,
        description="Load-test coordinator poll interval in seconds",
    )

    # Persistence
    state_dir: Path = Field(
        default=Path.home() / ".orchestrator",
        description="Directory holding the run history",
    )

    # Observability
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_json: bool = Field(
        default=False,
        description="Enable JSON log format",
    )
    otel_enabled: bool = Field(
        default=False,
        description="Enable OpenTelemetry tracing",
    )
    otel_endpoint: str | None = Field(
        default=None,
        description="OTLP collector endpoint (console exporter when unset)",
    )
    otel_protocol: str = Field(
        default="grpc",
        description="OTLP protocol (grpc/http)",
    )
    otel_service_name: str = Field(
        default="deploy-orchestrator",
        description="Service name for traces",
    )


# Global settings instance - import this directly
settings = OrchestratorSettings()
