"""Cluster API backends and the shared request-rate limiter."""

from .base import DEFAULT_API_VERSIONS, ApplyAction, ClusterAPI, object_key
from .memory import InMemoryClusterAPI
from .ratelimit import RateLimitedClusterAPI, TokenBucket

__all__ = [
    "ApplyAction",
    "ClusterAPI",
    "DEFAULT_API_VERSIONS",
    "InMemoryClusterAPI",
    "RateLimitedClusterAPI",
    "TokenBucket",
    "object_key",
]
