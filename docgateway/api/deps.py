"""FastAPI dependencies shared by the routers.

Components are built once in the application lifespan and stored on
app.state; these helpers hand them to route handlers via Depends().
"""

from __future__ import annotations

from fastapi import Request, Response

from docgateway.audit.sink import AuditSink
from docgateway.compliance.reporter import ComplianceReporter
from docgateway.config import Settings
from docgateway.core.rate_limit import RateGovernor
from docgateway.services.documentation import DocumentationOrchestrator

ELEVATED_HEADER = "X-Compliance-Elevated"


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> DocumentationOrchestrator:
    return request.app.state.orchestrator


def get_reporter(request: Request) -> ComplianceReporter:
    return request.app.state.reporter


def get_audit_sink(request: Request) -> AuditSink:
    return request.app.state.audit_sink


def client_address(request: Request) -> str:
    """Caller address used as the rate limit key and in the access log."""
    settings: Settings = request.app.state.settings
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client is not None:
        return request.client.host
    return "unknown"


def is_elevated(request: Request) -> bool:
    """Elevated-compliance path, or explicitly tagged by the caller."""
    governor: RateGovernor = request.app.state.rate_governor
    if governor.is_elevated_path(request.url.path):
        return True
    return request.headers.get(ELEVATED_HEADER, "").strip().lower() == "true"


async def enforce_rate_limit(request: Request, response: Response) -> None:
    """Router-level dependency: count the request against its rate tiers.

    Raises RateLimitExceeded (rendered as 429 by the app's exception handler).
    """
    governor: RateGovernor = request.app.state.rate_governor
    decision = await governor.check(client_address(request), request.url.path)
    if decision is not None and decision.limit > 0:
        response.headers.update(decision.headers())
