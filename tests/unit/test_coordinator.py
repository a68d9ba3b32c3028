"""Tests for LoadTestCoordinator in orchestrator/loadtest/coordinator.py.

A fake Locust master is served through httpx.MockTransport.
"""

import asyncio

import httpx
import pytest

from orchestrator.core.cancel import CancelToken
from orchestrator.core.exceptions import (
    CoordinatorResponseError,
    NoWorkersConnected,
    RunAborted,
    ZeroThroughput,
)
from orchestrator.graph.models import LoadTestResult, LoadTestSpec
from orchestrator.loadtest.coordinator import LoadTestCoordinator, evaluate, parse_stats

COORDINATOR = "http://locust.local:8089"


def stats_payload(
    requests: int = 100,
    failures: int = 0,
    workers: int = 2,
    rps: float = 25.0,
    p95: float = 120.0,
) -> dict:
    """Helper to build a /stats/requests payload."""
    return {
        "state": "running",
        "user_count": 10,
        "total_rps": rps,
        "workers": [
            {"id": f"worker-{i}", "state": "running", "user_count": 5} for i in range(workers)
        ],
        "stats": [
            {
                "method": "GET",
                "name": "/",
                "num_requests": requests,
                "num_failures": failures,
            },
            {
                "method": "",
                "name": "Aggregated",
                "num_requests": requests,
                "num_failures": failures,
                "avg_response_time": 80.0,
                "median_response_time": 70,
                "ninetieth_response_time": 110,
                "ninety_ninth_response_time": 300,
                "response_time_percentile_0.5": 70,
                "response_time_percentile_0.95": p95,
                "response_time_percentile_0.99": 300,
            },
        ],
        "current_response_time_percentiles": {
            "response_time_percentile_0.5": 15,
            "response_time_percentile_0.95": 20,
            "response_time_percentile_0.99": 25,
        },
    }


class FakeLocust:
    """Records requests and answers like a Locust master."""

    def __init__(self, payload: dict, workers_after: int = 0, swarm_status: int = 200):
        self.payload = payload
        self.workers_after = workers_after
        self.swarm_status = swarm_status
        self.requests: list[tuple[str, str]] = []
        self.swarm_form: dict[str, str] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))

        if request.url.path == "/stats/requests":
            if self.workers_after > 0:
                self.workers_after -= 1
                return httpx.Response(200, json={**self.payload, "workers": []})
            return httpx.Response(200, json=self.payload)
        if request.url.path == "/swarm":
            self.swarm_form = dict(httpx.QueryParams(request.content.decode()))
            return httpx.Response(self.swarm_status, json={"success": True})
        return httpx.Response(200, json={"success": True})

    @property
    def paths(self) -> list[str]:
        return [path for _, path in self.requests]


def spec(**overrides) -> LoadTestSpec:
    values = {
        "target_url": "http://vote.local",
        "coordinator_url": COORDINATOR,
        "users": 10,
        "spawn_rate": 5,
        "duration": 0.1,
        "connect_timeout": 0.3,
    }
    values.update(overrides)
    return LoadTestSpec(**values)


class TestParseStats:
    """Test stats parsing."""

    def test_uses_aggregated_row(self) -> None:
        """Totals come from the Aggregated row."""
        result = parse_stats(stats_payload(requests=200, failures=10), duration=10.0)

        assert result.total_requests == 200
        assert result.total_failures == 10
        assert result.error_rate == 0.05
        assert result.rps == 25.0
        assert result.p95_ms == 120.0
        assert result.worker_contributions == {"worker-0": 5, "worker-1": 5}

    def test_ignores_recent_window_percentiles(self) -> None:
        """Latency comes from the whole run, not the sliding recent window."""
        result = parse_stats(stats_payload(p95=140.0), duration=10.0)

        assert result.p50_ms == 70.0
        assert result.p95_ms == 140.0
        assert result.p99_ms == 300.0

    def test_falls_back_to_row_summary_fields(self) -> None:
        """Without percentile columns, median and 99th come from the summary fields."""
        payload = stats_payload()
        aggregated = payload["stats"][1]
        for p in ("0.5", "0.95", "0.99"):
            del aggregated[f"response_time_percentile_{p}"]

        result = parse_stats(payload, duration=10.0)

        assert result.p50_ms == 70.0
        assert result.p99_ms == 300.0

    def test_p95_not_taken_from_p90(self) -> None:
        """No p95 column leaves p95 unset rather than reporting the p90 value."""
        payload = stats_payload()
        del payload["stats"][1]["response_time_percentile_0.95"]

        result = parse_stats(payload, duration=10.0)

        assert result.p95_ms is None

    def test_without_aggregated_row(self) -> None:
        """Rows are summed when no Aggregated row is present."""
        payload = {
            "stats": [
                {"name": "/", "num_requests": 30, "num_failures": 3},
                {"name": "/vote", "num_requests": 20, "num_failures": 0},
            ]
        }

        result = parse_stats(payload, duration=10.0)

        assert result.total_requests == 50
        assert result.total_failures == 3
        assert result.rps == 5.0

    def test_empty_run(self) -> None:
        """An empty payload yields zero requests and no error rate."""
        result = parse_stats({}, duration=1.0)

        assert result.total_requests == 0
        assert result.error_rate == 0.0


class TestEvaluate:
    """Test threshold evaluation."""

    def test_passing_result(self) -> None:
        """A result inside thresholds has no violations."""
        result = LoadTestResult(total_requests=100, total_failures=0, rps=10, error_rate=0, p95_ms=100)

        assert evaluate(result, spec()) == []

    def test_error_rate_and_latency(self) -> None:
        """Both thresholds are reported."""
        result = LoadTestResult(
            total_requests=100, total_failures=5, rps=10, error_rate=0.05, p95_ms=2500
        )

        violations = evaluate(result, spec(max_error_rate=0.01, max_p95_ms=1000))

        assert len(violations) == 2
        assert "error rate" in violations[0]
        assert "p95" in violations[1]

    def test_no_requests(self) -> None:
        """A run without requests is a violation."""
        result = LoadTestResult(total_requests=0, total_failures=0, rps=0, error_rate=0)

        assert evaluate(result, spec()) == ["no requests were made"]

    def test_unknown_p95_skips_latency_threshold(self) -> None:
        """An unset p95 cannot violate the latency threshold."""
        result = LoadTestResult(total_requests=100, total_failures=0, rps=10, error_rate=0)

        assert result.p95_ms is None
        assert evaluate(result, spec(max_p95_ms=1)) == []


class TestRunLoadTest:
    """Test the coordinator protocol."""

    @pytest.mark.asyncio
    async def test_successful_run(self, mock_http) -> None:
        """Workers connect, the swarm runs and stats are collected."""
        locust = FakeLocust(stats_payload(requests=500, failures=1))
        coordinator = LoadTestCoordinator(client=mock_http(locust), poll_interval=0.02)

        result = await coordinator.run_load_test(spec())

        assert result.total_requests == 500
        assert len(result.worker_contributions) == 2
        assert locust.paths[0] == "/stats/requests"
        assert "/stats/reset" in locust.paths
        assert locust.paths[-1] == "/stop"
        assert locust.swarm_form == {
            "user_count": "10",
            "spawn_rate": "5.0",
            "host": "http://vote.local",
        }

    @pytest.mark.asyncio
    async def test_waits_for_workers(self, mock_http) -> None:
        """The swarm starts only once a worker has registered."""
        locust = FakeLocust(stats_payload(), workers_after=3)
        coordinator = LoadTestCoordinator(client=mock_http(locust), poll_interval=0.01)

        await coordinator.run_load_test(spec(connect_timeout=2.0))

        swarm_index = locust.paths.index("/swarm")
        assert locust.paths[:swarm_index].count("/stats/requests") == 4

    @pytest.mark.asyncio
    async def test_no_workers(self, mock_http) -> None:
        """No registered worker within the timeout is NoWorkersConnected."""
        locust = FakeLocust(stats_payload(workers=0))
        coordinator = LoadTestCoordinator(client=mock_http(locust), poll_interval=0.05)

        with pytest.raises(NoWorkersConnected) as exc_info:
            await coordinator.run_load_test(spec(connect_timeout=0.2))

        assert exc_info.value.code == "NO_WORKERS"
        assert "/swarm" not in locust.paths

    @pytest.mark.asyncio
    async def test_unreachable_coordinator_is_no_workers(self, mock_http) -> None:
        """A coordinator that cannot be reached never reports workers."""

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        coordinator = LoadTestCoordinator(client=mock_http(refuse), poll_interval=0.05)

        with pytest.raises(NoWorkersConnected):
            await coordinator.run_load_test(spec(connect_timeout=0.2))

    @pytest.mark.asyncio
    async def test_html_coordinator_is_response_error(self, mock_http) -> None:
        """A coordinator URL serving a web page raises CoordinatorResponseError."""

        def html(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>not locust</html>")

        coordinator = LoadTestCoordinator(client=mock_http(html), poll_interval=0.05)

        with pytest.raises(CoordinatorResponseError) as exc_info:
            await coordinator.run_load_test(spec(connect_timeout=0.2))

        assert exc_info.value.code == "COORDINATOR_RESPONSE"
        assert "not JSON" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_non_object_stats_is_response_error(self, mock_http) -> None:
        """A JSON body that is not an object is rejected."""

        def listing(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=["not", "stats"])

        coordinator = LoadTestCoordinator(client=mock_http(listing), poll_interval=0.05)

        with pytest.raises(CoordinatorResponseError) as exc_info:
            await coordinator.run_load_test(spec(connect_timeout=0.2))

        assert "list" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_waits_through_non_json_startup_page(self, mock_http) -> None:
        """Malformed answers while waiting for workers are retried."""
        locust = FakeLocust(stats_payload())
        pages = {"left": 2}

        def starting(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/stats/requests" and pages["left"] > 0:
                pages["left"] -= 1
                return httpx.Response(200, text="<html>starting</html>")
            return locust(request)

        coordinator = LoadTestCoordinator(client=mock_http(starting), poll_interval=0.01)

        result = await coordinator.run_load_test(spec(connect_timeout=2.0))

        assert result.total_requests == 100
        assert "/swarm" in locust.paths

    @pytest.mark.asyncio
    async def test_zero_throughput(self, mock_http) -> None:
        """Requests with no successes is ZeroThroughput, not NoWorkersConnected."""
        locust = FakeLocust(stats_payload(requests=80, failures=80))
        coordinator = LoadTestCoordinator(client=mock_http(locust), poll_interval=0.02)

        with pytest.raises(ZeroThroughput) as exc_info:
            await coordinator.run_load_test(spec())

        assert exc_info.value.code == "ZERO_THROUGHPUT"
        assert locust.paths[-1] == "/stop"

    @pytest.mark.asyncio
    async def test_swarm_rejected(self, mock_http) -> None:
        """A swarm request the master refuses raises an HTTP error."""
        locust = FakeLocust(stats_payload(), swarm_status=400)
        coordinator = LoadTestCoordinator(client=mock_http(locust), poll_interval=0.02)

        with pytest.raises(httpx.HTTPStatusError):
            await coordinator.run_load_test(spec())

    @pytest.mark.asyncio
    async def test_abort_stops_swarm(self, mock_http) -> None:
        """Aborting mid-run still stops the swarm."""
        locust = FakeLocust(stats_payload())
        coordinator = LoadTestCoordinator(client=mock_http(locust), poll_interval=0.05)
        cancel = CancelToken()

        task = asyncio.create_task(coordinator.run_load_test(spec(duration=30), cancel))
        await asyncio.sleep(0.1)
        cancel.cancel("operator abort")

        with pytest.raises(RunAborted):
            await asyncio.wait_for(task, timeout=1.0)

        assert locust.paths[-1] == "/stop"
