"""Telemetry package: structured logging with request correlation.

Prometheus metrics live in docgateway.middleware.prometheus.
"""

from __future__ import annotations

from docgateway.telemetry.logging import (
    RequestIdMiddleware,
    bind_caller_context,
    configure_logging,
    mask_vehicle_identifiers,
)

__all__ = [
    "RequestIdMiddleware",
    "bind_caller_context",
    "configure_logging",
    "mask_vehicle_identifiers",
]
