"""Distributed load testing through a Locust master."""

from .coordinator import LoadTestCoordinator, evaluate, parse_stats

__all__ = ["LoadTestCoordinator", "evaluate", "parse_stats"]
