"""Liveness probes for observability backends."""

from .prober import HealthProber, ProbeOutcome, ProbeResult

__all__ = ["HealthProber", "ProbeOutcome", "ProbeResult"]
