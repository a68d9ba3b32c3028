"""Health prober for observability backends.

A pod reporting Running does not mean Prometheus scrapes it, Loki accepts
logs or Jaeger receives spans. After deployment each backend is queried
through its own API and classified as Healthy, Degraded (reachable but
reporting errors) or Unreachable.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Optional

import httpx
from pydantic import BaseModel

from ..config import settings
from ..graph.models import EndpointCheck

logger = logging.getLogger(__name__)


class ProbeOutcome(str, Enum):
    """Classification of a backend probe."""

    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNREACHABLE = "Unreachable"


class ProbeResult(BaseModel):
    """Result of probing one endpoint."""

    name: str
    url: str
    outcome: ProbeOutcome
    required: bool = True
    detail: str = ""
    latency_ms: float = 0.0


class HealthProber:
    """Probes metrics, log and trace backends over HTTP.

    Usage:
        async with HealthProber() as prober:
            result = await prober.probe(endpoint)
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize prober.

        Args:
            client: HTTP client to use (one is created when None)
            timeout: Per-request timeout in seconds
        """
        self.timeout = timeout or settings.probe_timeout
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.timeout)

    async def __aenter__(self) -> "HealthProber":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def probe(self, endpoint: EndpointCheck) -> ProbeResult:
        """Probe one endpoint and classify the result.

        Connection failures and timeouts are Unreachable; everything the
        backend answers is Healthy or Degraded depending on its content.
        """
        checks = {
            "http": self._probe_http,
            "prometheus_target": self._probe_prometheus_target,
            "loki_ready": self._probe_loki,
            "jaeger_service": self._probe_jaeger,
            "grafana_health": self._probe_grafana,
        }

        start = time.monotonic()
        try:
            outcome, detail = await checks[endpoint.type](endpoint)
        except httpx.TransportError as e:
            outcome, detail = ProbeOutcome.UNREACHABLE, f"{type(e).__name__}: {e}"
        except ValueError as e:
            # Response body was not the JSON the backend should return
            outcome, detail = ProbeOutcome.DEGRADED, f"Malformed response: {e}"

        latency_ms = (time.monotonic() - start) * 1000
        result = ProbeResult(
            name=endpoint.name,
            url=endpoint.url,
            outcome=outcome,
            required=endpoint.required,
            detail=detail,
            latency_ms=round(latency_ms, 1),
        )

        log = logger.info if outcome == ProbeOutcome.HEALTHY else logger.warning
        log(f"Probe {endpoint.name}: {outcome.value} {detail}".rstrip())
        return result

    async def probe_all(self, endpoints: list[EndpointCheck]) -> list[ProbeResult]:
        """Probe endpoints concurrently, results in input order."""
        return list(await asyncio.gather(*(self.probe(e) for e in endpoints)))

    def _url(self, endpoint: EndpointCheck, path: str) -> str:
        return endpoint.url.rstrip("/") + path

    async def _probe_http(self, endpoint: EndpointCheck) -> tuple[ProbeOutcome, str]:
        response = await self.client.get(endpoint.url)
        if response.status_code == endpoint.expected_status:
            return ProbeOutcome.HEALTHY, f"HTTP {response.status_code}"
        return (
            ProbeOutcome.DEGRADED,
            f"HTTP {response.status_code}, expected {endpoint.expected_status}",
        )

    async def _probe_prometheus_target(
        self, endpoint: EndpointCheck
    ) -> tuple[ProbeOutcome, str]:
        """Target job listed in service discovery and scraped successfully."""
        response = await self.client.get(
            self._url(endpoint, "/api/v1/targets"), params={"state": "active"}
        )
        if response.status_code != 200:
            return ProbeOutcome.DEGRADED, f"HTTP {response.status_code}"

        payload = response.json()
        if payload.get("status") != "success":
            return ProbeOutcome.DEGRADED, f"Prometheus status: {payload.get('status')}"

        targets = [
            t for t in payload.get("data", {}).get("activeTargets", [])
            if t.get("labels", {}).get("job") == endpoint.target
            or t.get("scrapePool") == endpoint.target
        ]
        if not targets:
            return ProbeOutcome.DEGRADED, f"Target '{endpoint.target}' not in service discovery"

        down = [t for t in targets if t.get("health") != "up"]
        if down:
            error = down[0].get("lastError") or down[0].get("health")
            return (
                ProbeOutcome.DEGRADED,
                f"{len(down)}/{len(targets)} '{endpoint.target}' targets down: {error}",
            )
        return ProbeOutcome.HEALTHY, f"{len(targets)} '{endpoint.target}' target(s) up"

    async def _probe_loki(self, endpoint: EndpointCheck) -> tuple[ProbeOutcome, str]:
        response = await self.client.get(self._url(endpoint, "/ready"))
        body = response.text.strip()
        if response.status_code == 200 and body == "ready":
            return ProbeOutcome.HEALTHY, "ready"
        return ProbeOutcome.DEGRADED, f"HTTP {response.status_code}: {body[:200]}"

    async def _probe_jaeger(self, endpoint: EndpointCheck) -> tuple[ProbeOutcome, str]:
        response = await self.client.get(self._url(endpoint, "/api/services"))
        if response.status_code != 200:
            return ProbeOutcome.DEGRADED, f"HTTP {response.status_code}"

        services = response.json().get("data") or []
        if endpoint.service in services:
            return ProbeOutcome.HEALTHY, f"Service '{endpoint.service}' reporting traces"
        return ProbeOutcome.DEGRADED, f"Service '{endpoint.service}' has no traces yet"

    async def _probe_grafana(self, endpoint: EndpointCheck) -> tuple[ProbeOutcome, str]:
        response = await self.client.get(self._url(endpoint, "/api/health"))
        if response.status_code != 200:
            return ProbeOutcome.DEGRADED, f"HTTP {response.status_code}"

        database = response.json().get("database")
        if database == "ok":
            return ProbeOutcome.HEALTHY, "database ok"
        return ProbeOutcome.DEGRADED, f"database {database}"
