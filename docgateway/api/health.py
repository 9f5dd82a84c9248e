"""Health check endpoints.

/health       - Component status for the gateway's dependencies
/health/live  - Liveness probe: is the process up?

Components checked (in parallel, each with a timeout):
- database:   audit store reachable
- cache:      response cache backend reachable (or disabled)
- generation: provider credentials configured
- auditQueue: audit worker pool running (or disabled)

The gateway keeps serving documentation when the audit store or cache is
down, so a failing component degrades the overall status but the endpoint
still answers 200.

These are public endpoints - no auth required.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog
from fastapi import APIRouter, Request

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_CHECK_TIMEOUT_SECONDS = 2.0


class ComponentStatus(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DISABLED = "disabled"
    NOT_CONFIGURED = "not_configured"


async def _probe(name: str, check: Awaitable[bool]) -> ComponentStatus:
    try:
        ok = await asyncio.wait_for(check, timeout=_CHECK_TIMEOUT_SECONDS)
    except TimeoutError:
        log.warning("health.check_timeout", component=name)
        return ComponentStatus.UNHEALTHY
    except Exception as exc:
        log.warning("health.check_failed", component=name, error=str(exc))
        return ComponentStatus.UNHEALTHY
    return ComponentStatus.HEALTHY if ok else ComponentStatus.UNHEALTHY


@router.get("")
async def health(request: Request) -> dict[str, Any]:
    state = request.app.state
    settings = state.settings

    database, cache = await asyncio.gather(
        _probe("database", state.audit_store.ping()),
        _probe("cache", state.response_cache.backend.ping()),
    )
    if not state.response_cache.enabled:
        cache = ComponentStatus.DISABLED

    generation = (
        ComponentStatus.HEALTHY if state.generator.configured else ComponentStatus.NOT_CONFIGURED
    )

    sink = state.audit_sink
    if not settings.audit_enabled:
        audit_queue = ComponentStatus.DISABLED
    elif sink.running:
        audit_queue = ComponentStatus.HEALTHY
    else:
        audit_queue = ComponentStatus.UNHEALTHY

    dependencies = {
        "database": database,
        "cache": cache,
        "generation": generation,
        "auditQueue": audit_queue,
    }
    degraded = any(s in (ComponentStatus.UNHEALTHY, ComponentStatus.NOT_CONFIGURED) for s in dependencies.values())

    return {
        "status": "degraded" if degraded else "ok",
        "timestamp": datetime.now(UTC).isoformat(),
        "environment": str(settings.environment),
        "dependencies": {name: str(s) for name, s in dependencies.items()},
        "audit": sink.stats(),
    }


@router.get("/live")
async def liveness() -> dict:
    """Liveness probe - always returns 200 if the process is running."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}
