"""Main API router - aggregates all sub-routers.

Everything under /api is rate limited. Routes under /api/itar are the
elevated-compliance paths and count against both rate tiers.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from docgateway.api import compliance, documentation, health
from docgateway.api.deps import enforce_rate_limit

# Public router (no auth, no rate limit)
public_router = APIRouter()
public_router.include_router(health.router)

api_router = APIRouter(prefix="/api", dependencies=[Depends(enforce_rate_limit)])
api_router.include_router(documentation.router)
api_router.include_router(documentation.elevated_router, prefix="/itar")
api_router.include_router(compliance.router)
