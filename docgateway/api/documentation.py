"""Documentation generation endpoints.

POST /api/generate-documentation       - standard path
POST /api/itar/generate-documentation  - elevated-compliance path

Both run the same pipeline. The elevated path additionally writes an
inline access record, is held to the elevated rate ceiling, and carries a
compliance block in its response. A standard-path request can opt into
the same treatment with ``X-Compliance-Elevated: true``.

Structural validation (required fields, identifier length) happens in
DiagnosticRequest.build so that the error names the offending field.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from docgateway.api.deps import client_address, get_orchestrator, is_elevated
from docgateway.core.requests import DiagnosticRequest
from docgateway.services.documentation import DocumentationOrchestrator, RequestContext
from docgateway.telemetry.logging import bind_caller_context

log = structlog.get_logger(__name__)

router = APIRouter(tags=["documentation"])


class AuthorizationClaim(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    caller_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("callerId", "caller_id", "userId"),
    )
    authorized: bool = False


class DocumentationRequestBody(BaseModel):
    """Request body. camelCase names, plus the legacy client's field names."""

    model_config = ConfigDict(extra="ignore")

    vehicle_identifier: str | None = Field(
        default=None,
        validation_alias=AliasChoices("vehicleIdentifier", "vin"),
        description="17-character vehicle identification number",
    )
    subsystem: str | None = Field(
        default=None,
        validation_alias=AliasChoices("subsystem", "system"),
    )
    diagnostic_codes: str | None = Field(
        default=None,
        validation_alias=AliasChoices("diagnosticCodes", "dtcCodes"),
        description="Comma-separated trouble codes, e.g. 'P0300,P0171'",
    )
    notes: str | None = Field(
        default=None,
        validation_alias=AliasChoices("notes", "techNotes"),
    )
    submitter: str | None = Field(
        default=None,
        validation_alias=AliasChoices("submitter", "technician"),
    )
    organization: str | None = Field(
        default=None,
        validation_alias=AliasChoices("organization", "dealership"),
    )
    authorization: AuthorizationClaim | None = None

    def to_request(self) -> DiagnosticRequest:
        claim = self.authorization or AuthorizationClaim()
        return DiagnosticRequest.build(
            vehicle_identifier=self.vehicle_identifier,
            subsystem=self.subsystem,
            notes=self.notes,
            diagnostic_codes=self.diagnostic_codes,
            submitter=self.submitter,
            organization=self.organization,
            authorized=claim.authorized,
            caller_id=claim.caller_id,
        )


async def _serve(
    body: DocumentationRequestBody,
    request: Request,
    orchestrator: DocumentationOrchestrator,
) -> dict[str, Any]:
    diagnostic = body.to_request()
    source_address = client_address(request)
    bind_caller_context(diagnostic.caller_id, source_address)

    context = RequestContext(
        endpoint=request.url.path,
        source_address=source_address,
        elevated=is_elevated(request),
        request_id=structlog.contextvars.get_contextvars().get("request_id"),
    )
    result = await orchestrator.handle(diagnostic, context)
    return result.to_envelope()


@router.post(
    "/generate-documentation",
    summary="Generate repair-order documentation",
)
async def generate_documentation(
    body: DocumentationRequestBody,
    request: Request,
    orchestrator: DocumentationOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await _serve(body, request, orchestrator)


elevated_router = APIRouter(tags=["documentation", "compliance"])


@elevated_router.post(
    "/generate-documentation",
    summary="Generate documentation on the elevated-compliance path",
)
async def generate_documentation_elevated(
    body: DocumentationRequestBody,
    request: Request,
    orchestrator: DocumentationOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await _serve(body, request, orchestrator)
