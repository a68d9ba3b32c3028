"""Readiness gate - block until a deployed unit is serving."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..cluster.base import ClusterAPI
from ..config import settings
from ..core.cancel import CancelToken
from ..core.exceptions import ClusterAPIError, ReadinessTimeout
from ..graph.models import DeployableUnit

logger = logging.getLogger(__name__)


@dataclass
class ReadinessResult:
    """A unit that became ready."""

    unit_id: str
    elapsed: float
    polls: int
    status: Any = None


@dataclass
class Observation:
    ready: bool
    status: Any


class ReadinessGate:
    """Polls a unit's readiness predicate at a fixed interval.

    The first check happens immediately, so an already-ready unit passes
    without waiting a poll interval.
    """

    def __init__(
        self,
        cluster: ClusterAPI,
        poll_interval: Optional[float] = None,
        default_timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize readiness gate.

        Args:
            cluster: Shared cluster API client
            poll_interval: Seconds between checks
            default_timeout: Timeout for units without their own
            http_client: Client used for http readiness checks
        """
        self.cluster = cluster
        self.poll_interval = poll_interval or settings.poll_interval
        self.default_timeout = default_timeout or settings.readiness_timeout
        self.http_client = http_client

    async def wait_ready(
        self,
        unit: DeployableUnit,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ReadinessResult:
        """Wait until the unit's readiness predicate holds.

        Args:
            unit: Unit to wait for
            timeout: Seconds before giving up (unit override, then default)
            cancel: Run cancellation token

        Returns:
            Elapsed time and the status that satisfied the predicate

        Raises:
            ReadinessTimeout: If not ready when the timeout elapses
            RunAborted: If the run is cancelled while waiting
        """
        cancel = cancel or CancelToken()
        timeout = timeout or unit.readiness.timeout or self.default_timeout
        start = time.monotonic()
        deadline = start + timeout
        polls = 0

        while True:
            cancel.check()
            polls += 1
            observation = await self.check(unit)

            if observation.ready:
                elapsed = time.monotonic() - start
                logger.info(f"Unit {unit.id} ready after {elapsed:.1f}s ({polls} checks)")
                return ReadinessResult(
                    unit_id=unit.id, elapsed=elapsed, polls=polls, status=observation.status
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadinessTimeout(unit.id, timeout, observation.status)

            logger.debug(f"Unit {unit.id} not ready yet: {observation.status}")
            await cancel.sleep(min(self.poll_interval, remaining))

    async def check(self, unit: DeployableUnit) -> Observation:
        """Evaluate the readiness predicate once.

        A transient cluster error counts as not ready yet; permanent ones
        propagate.
        """
        check = unit.readiness

        if check.type == "none":
            return Observation(True, "no readiness check")

        if check.type == "http":
            return await self._check_http(check.url, check.expected_status)

        try:
            obj = await self.cluster.get_status(check.kind, unit.workload_name, unit.namespace)
        except ClusterAPIError as e:
            if not e.recoverable:
                raise
            logger.warning(f"Status read for {unit.id} failed, will retry: {e}")
            return Observation(False, str(e))
        if obj is None:
            return Observation(False, f"{check.kind} {unit.workload_name} not found")

        if check.type == "exists":
            return Observation(True, f"{check.kind} {unit.workload_name} exists")

        return self._check_replicas(obj, check.replicas)

    def _check_replicas(self, obj: dict, expected: Optional[int]) -> Observation:
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}

        desired = expected if expected is not None else spec.get("replicas", 1)
        ready = status.get("readyReplicas") or 0
        available = status.get("availableReplicas", ready) or 0

        observed = {"desired": desired, "ready": ready, "available": available}
        return Observation(ready >= desired and available >= desired, observed)

    async def _check_http(self, url: str, expected_status: int) -> Observation:
        try:
            if self.http_client is not None:
                response = await self.http_client.get(url)
            else:
                async with httpx.AsyncClient(timeout=settings.probe_timeout) as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            return Observation(False, f"{type(e).__name__}: {e}")

        return Observation(
            response.status_code == expected_status, f"HTTP {response.status_code}"
        )
