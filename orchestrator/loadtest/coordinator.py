"""Load-test coordinator - drive a distributed Locust run.

Talks to the Locust master's web API. Workers register with the master on
its fixed port; this module waits for them, starts the swarm, lets it run
for the configured duration and collects aggregated statistics.

Two failure modes are kept apart because their causes differ:

* ``NoWorkersConnected``: no worker registered in time, usually a worker
  that cannot resolve or reach the master service.
* ``ZeroThroughput``: requests were sent but none succeeded, usually a
  wrong target host.
"""

import logging
import time
from typing import Any, Optional

import httpx

from ..config import settings
from ..core.cancel import CancelToken
from ..core.exceptions import CoordinatorResponseError, NoWorkersConnected, ZeroThroughput
from ..graph.models import LoadTestResult, LoadTestSpec

logger = logging.getLogger(__name__)

AGGREGATED_ROW = "Aggregated"


def _percentile(
    row: dict[str, Any], p: str, fallback: Optional[str] = None
) -> Optional[float]:
    key = f"response_time_percentile_{p}"
    if row.get(key) is not None:
        return float(row[key])
    if fallback and row.get(fallback) is not None:
        return float(row[fallback])
    return None


def parse_stats(payload: dict[str, Any], duration: float) -> LoadTestResult:
    """Build a LoadTestResult from a ``/stats/requests`` payload."""
    rows = payload.get("stats") or []
    aggregated = next((r for r in rows if r.get("name") == AGGREGATED_ROW), None)
    if aggregated is None:
        aggregated = {
            "num_requests": sum(r.get("num_requests", 0) for r in rows),
            "num_failures": sum(r.get("num_failures", 0) for r in rows),
        }

    total = int(aggregated.get("num_requests") or 0)
    failures = int(aggregated.get("num_failures") or 0)
    rps = payload.get("total_rps")
    if rps is None:
        rps = total / duration if duration > 0 else 0.0

    workers = payload.get("workers") or []

    return LoadTestResult(
        total_requests=total,
        total_failures=failures,
        rps=round(float(rps), 2),
        error_rate=round(failures / total, 4) if total else 0.0,
        avg_ms=float(aggregated.get("avg_response_time") or 0.0),
        p50_ms=_percentile(aggregated, "0.5", "median_response_time") or 0.0,
        p95_ms=_percentile(aggregated, "0.95"),
        p99_ms=_percentile(aggregated, "0.99", "ninety_ninth_response_time") or 0.0,
        worker_contributions={
            str(w.get("id")): int(w.get("user_count") or 0) for w in workers
        },
        duration=round(duration, 2),
    )


def evaluate(result: LoadTestResult, spec: LoadTestSpec) -> list[str]:
    """List the thresholds a result violates (empty when it passes)."""
    violations = []
    if result.total_requests == 0:
        violations.append("no requests were made")
    if result.error_rate > spec.max_error_rate:
        violations.append(
            f"error rate {result.error_rate:.2%} exceeds {spec.max_error_rate:.2%}"
        )
    if result.p95_ms is not None and result.p95_ms > spec.max_p95_ms:
        violations.append(
            f"p95 latency {result.p95_ms:.0f}ms exceeds {spec.max_p95_ms:.0f}ms"
        )
    return violations


class LoadTestCoordinator:
    """Runs load tests through a Locust master."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        poll_interval: Optional[float] = None,
    ):
        """Initialize coordinator.

        Args:
            client: HTTP client to use (one is created per run when None)
            poll_interval: Seconds between coordinator polls
        """
        self.client = client
        self.poll_interval = poll_interval or settings.loadtest_poll_interval

    async def run_load_test(
        self, spec: LoadTestSpec, cancel: Optional[CancelToken] = None
    ) -> LoadTestResult:
        """Run one distributed load test.

        Args:
            spec: Target, ramp profile and timeouts
            cancel: Run cancellation token

        Returns:
            Aggregated statistics

        Raises:
            NoWorkersConnected: If no worker registers within connect_timeout
            ZeroThroughput: If requests were attempted and none succeeded
            RunAborted: If the run is cancelled
        """
        cancel = cancel or CancelToken()

        if self.client is not None:
            return await self._run(self.client, spec, cancel)

        async with httpx.AsyncClient(
            base_url=spec.coordinator_url, timeout=settings.probe_timeout
        ) as client:
            return await self._run(client, spec, cancel)

    async def _run(
        self, client: httpx.AsyncClient, spec: LoadTestSpec, cancel: CancelToken
    ) -> LoadTestResult:
        base = spec.coordinator_url.rstrip("/")

        workers = await self._wait_for_workers(client, base, spec, cancel)
        logger.info(f"{len(workers)} load-test worker(s) connected to {base}")

        await client.get(f"{base}/stats/reset")
        response = await client.post(
            f"{base}/swarm",
            data={
                "user_count": spec.users,
                "spawn_rate": spec.spawn_rate,
                "host": spec.target_url,
            },
        )
        response.raise_for_status()
        logger.info(
            f"Swarm started: {spec.users} users at {spec.spawn_rate}/s "
            f"against {spec.target_url} for {spec.duration:g}s"
        )

        start = time.monotonic()
        try:
            while (remaining := spec.duration - (time.monotonic() - start)) > 0:
                await cancel.sleep(min(self.poll_interval, remaining))
                payload = await self._stats(client, base)
                logger.debug(
                    f"Load test: {payload.get('user_count', 0)} users, "
                    f"{payload.get('total_rps', 0):.1f} rps"
                )

            payload = await self._stats(client, base)
        finally:
            await self._stop(client, base)

        result = parse_stats(payload, time.monotonic() - start)

        if result.total_requests > 0 and result.successes == 0 and spec.target_url:
            raise ZeroThroughput(spec.target_url, result.total_requests)

        logger.info(
            f"Load test finished: {result.total_requests} requests, "
            f"{result.rps} rps, {result.error_rate:.2%} errors, p95 {result.p95_ms}ms"
        )
        return result

    async def _wait_for_workers(
        self,
        client: httpx.AsyncClient,
        base: str,
        spec: LoadTestSpec,
        cancel: CancelToken,
    ) -> list[dict[str, Any]]:
        connect_timeout = spec.connect_timeout or settings.worker_connect_timeout
        deadline = time.monotonic() + connect_timeout
        malformed: Optional[CoordinatorResponseError] = None

        while True:
            try:
                workers = (await self._stats(client, base)).get("workers") or []
            except httpx.TransportError as e:
                logger.debug(f"Coordinator {base} not reachable yet: {e}")
                malformed = None
                workers = []
            except CoordinatorResponseError as e:
                logger.debug(f"Coordinator {base} not serving stats yet: {e.detail}")
                malformed = e
                workers = []
            else:
                malformed = None

            if workers:
                return workers

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                # Reachable but not answering with stats: wrong coordinator URL
                if malformed is not None:
                    raise malformed
                raise NoWorkersConnected(base, connect_timeout)
            await cancel.sleep(min(self.poll_interval, remaining))

    async def _stats(self, client: httpx.AsyncClient, base: str) -> dict[str, Any]:
        response = await client.get(f"{base}/stats/requests")
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise CoordinatorResponseError(base, f"body is not JSON ({e})") from e
        if not isinstance(payload, dict):
            raise CoordinatorResponseError(
                base, f"expected an object, got {type(payload).__name__}"
            )
        return payload

    async def _stop(self, client: httpx.AsyncClient, base: str) -> None:
        try:
            await client.get(f"{base}/stop")
        except httpx.HTTPError as e:
            logger.warning(f"Failed to stop load test at {base}: {e}")
