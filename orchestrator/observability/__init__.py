"""Observability: logging and optional tracing."""

from .logging import RunLoggerAdapter, setup_logging
from .telemetry import (
    record_exception,
    setup_telemetry,
    shutdown_telemetry,
    traced_operation,
)

__all__ = [
    # Logging
    "RunLoggerAdapter",
    "setup_logging",
    # Telemetry
    "record_exception",
    "setup_telemetry",
    "shutdown_telemetry",
    "traced_operation",
]
