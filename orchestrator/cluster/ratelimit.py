"""Request-rate limiting for the shared cluster API client.

Concurrent unit deployments all funnel through one ``RateLimitedClusterAPI``
so a burst of applies and status polls cannot overwhelm the control plane.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

from .base import ApplyAction, ClusterAPI


class TokenBucket:
    """Token bucket algorithm.

    Holds up to ``burst`` tokens, refilled continuously at ``rate`` tokens
    per second. ``acquire`` waits until a token is available.
    """

    def __init__(self, rate: float, burst: int):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = rate
        self.burst = burst
        self.tokens = float(burst)
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.burst, self.tokens + (now - self.last_refill) * self.rate)
        self.last_refill = now

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self.tokens >= 1:
                    self.tokens -= 1
                    return
                await asyncio.sleep((1 - self.tokens) / self.rate)


class RateLimitedClusterAPI(ClusterAPI):
    """Wraps a cluster backend so every request takes a bucket token."""

    def __init__(self, inner: ClusterAPI, bucket: TokenBucket):
        self.inner = inner
        self.bucket = bucket

    async def apply_manifest(self, doc: Dict[str, Any]) -> ApplyAction:
        await self.bucket.acquire()
        return await self.inner.apply_manifest(doc)

    async def get_status(
        self,
        kind: str,
        name: str,
        namespace: str,
        api_version: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        await self.bucket.acquire()
        return await self.inner.get_status(kind, name, namespace, api_version)

    async def list_by_label(
        self,
        kind: str,
        namespace: str,
        selector: Dict[str, str] | str,
        api_version: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        await self.bucket.acquire()
        return await self.inner.list_by_label(kind, namespace, selector, api_version)

    async def close(self) -> None:
        await self.inner.close()
