"""Exception hierarchy for the deployment orchestrator.

Every failure the orchestrator can record against a unit or a stage has a
named exception with a machine-readable code, so a run report can point at
the exact cause instead of an opaque aggregate failure.
"""

from typing import Any


class OrchestratorError(Exception):
    """Base exception for orchestrator errors.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code.
        recoverable: Whether retrying the operation may succeed.
    """

    def __init__(
        self,
        message: str,
        code: str,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.recoverable = recoverable

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for JSON serialization.

        Returns:
            Dictionary with error details.
        """
        return {
            "error": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
        }


# ============================================================================
# Graph construction
# ============================================================================


class GraphLoadError(OrchestratorError):
    """Graph file could not be read, parsed or validated."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "GRAPH_LOAD")


class DuplicateUnit(OrchestratorError):
    """A unit with the same id is already part of the graph."""

    def __init__(self, unit_id: str) -> None:
        super().__init__(f"Unit '{unit_id}' already exists", "DUPLICATE_UNIT")
        self.unit_id = unit_id


class UnknownDependency(OrchestratorError):
    """A unit depends on ids that are not part of the graph."""

    def __init__(self, unit_id: str, missing: list[str]) -> None:
        super().__init__(
            f"Unit '{unit_id}' depends on unknown unit(s): {', '.join(sorted(missing))}",
            "UNKNOWN_DEPENDENCY",
        )
        self.unit_id = unit_id
        self.missing = sorted(missing)


class CycleDetected(OrchestratorError):
    """The dependency set is not acyclic.

    Attributes:
        cycle: Unit ids along the cycle, first id repeated at the end.
    """

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}", "CYCLE_DETECTED"
        )
        self.cycle = cycle

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["cycle"] = self.cycle
        return data


# ============================================================================
# Cluster / apply
# ============================================================================


class ClusterAPIError(OrchestratorError):
    """Base for failures talking to the cluster API."""


class ApplyRejected(ClusterAPIError):
    """The cluster API refused a manifest.

    The API's validation message is kept verbatim in ``detail``.
    """

    def __init__(self, unit_id: str, detail: str) -> None:
        super().__init__(
            f"Apply of '{unit_id}' rejected: {detail}", "APPLY_REJECTED"
        )
        self.unit_id = unit_id
        self.detail = detail


class TransientApplyError(ClusterAPIError):
    """The cluster API was unavailable or asked us to back off."""

    def __init__(self, unit_id: str, detail: str) -> None:
        super().__init__(
            f"Apply of '{unit_id}' failed transiently: {detail}",
            "APPLY_TRANSIENT",
            recoverable=True,
        )
        self.unit_id = unit_id
        self.detail = detail


class DependencyFailed(OrchestratorError):
    """A unit was never applied because a dependency failed."""

    def __init__(self, unit_id: str, failed: list[str]) -> None:
        super().__init__(
            f"Unit '{unit_id}' blocked by failed dependency: {', '.join(sorted(failed))}",
            "DEPENDENCY_FAILED",
        )
        self.unit_id = unit_id
        self.failed = sorted(failed)


# ============================================================================
# Readiness / probing
# ============================================================================


class ReadinessTimeout(OrchestratorError):
    """A unit did not become ready within its timeout.

    Attributes:
        last_status: Last status observed before giving up.
    """

    def __init__(
        self, unit_id: str, timeout: float, last_status: Any = None
    ) -> None:
        super().__init__(
            f"Unit '{unit_id}' not ready after {timeout:g}s (last status: {last_status})",
            "READINESS_TIMEOUT",
            recoverable=True,
        )
        self.unit_id = unit_id
        self.timeout = timeout
        self.last_status = last_status


class ProbeFailed(OrchestratorError):
    """An observability backend probe was Unreachable or Degraded."""

    def __init__(self, endpoint: str, outcome: str, detail: str = "") -> None:
        message = f"Endpoint '{endpoint}' is {outcome}"
        if detail:
            message += f": {detail}"
        super().__init__(message, f"PROBE_{outcome.upper()}", recoverable=True)
        self.endpoint = endpoint
        self.outcome = outcome
        self.detail = detail


# ============================================================================
# Load testing
# ============================================================================


class NoWorkersConnected(OrchestratorError):
    """No load-generation worker registered with the coordinator in time.

    Usually means workers cannot resolve or reach the coordinator address.
    """

    def __init__(self, coordinator_url: str, timeout: float) -> None:
        super().__init__(
            f"No workers connected to {coordinator_url} within {timeout:g}s; "
            "check that workers can resolve and reach the coordinator service",
            "NO_WORKERS",
            recoverable=True,
        )
        self.coordinator_url = coordinator_url
        self.timeout = timeout


class CoordinatorResponseError(OrchestratorError):
    """The coordinator answered with something other than Locust stats JSON.

    Usually means the coordinator URL points at the wrong service.
    """

    def __init__(self, url: str, detail: str) -> None:
        super().__init__(
            f"Unexpected response from coordinator {url}: {detail}",
            "COORDINATOR_RESPONSE",
        )
        self.url = url
        self.detail = detail


class ZeroThroughput(OrchestratorError):
    """Requests were attempted but none succeeded.

    Usually means the load test points at the wrong target host.
    """

    def __init__(self, target: str, attempted: int) -> None:
        super().__init__(
            f"{attempted} request(s) to {target} attempted, none succeeded; "
            "check the load-test target host",
            "ZERO_THROUGHPUT",
        )
        self.target = target
        self.attempted = attempted


# ============================================================================
# Run control
# ============================================================================


class RunAborted(OrchestratorError):
    """The orchestration run was cancelled while an operation was waiting."""

    def __init__(self, message: str = "Run aborted") -> None:
        super().__init__(message, "ABORTED")
