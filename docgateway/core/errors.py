"""Gateway error taxonomy.

Every caller-visible failure is a GatewayError subclass carrying its HTTP
status and a machine-stable category string. The FastAPI exception handler
in docgateway.main renders them; nothing else builds error bodies.

PersistenceError is the exception: it is raised by the cache/audit stores
and always absorbed by their callers, so it never reaches the handler.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for errors that terminate a request."""

    status_code: int = 500
    category: str = "internal_error"
    public_message: str = "Internal server error"
    # Shown to callers as complianceNote; None means only elevated paths get one
    compliance_note: str | None = None

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        # Raw upstream detail, only rendered outside production
        self.detail = detail

    def headers(self) -> dict[str, str]:
        return {}


class InvalidRequestError(GatewayError):
    """Malformed or missing request fields."""

    status_code = 400
    category = "invalid_request"
    public_message = "Invalid request"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class RateLimitExceeded(GatewayError):
    """A rate policy ceiling was hit for this caller."""

    status_code = 429
    category = "rate_limited"
    public_message = "Too many requests from this address, please try again later."

    def __init__(self, *, tier: str, limit: int, window_seconds: int, retry_after: int) -> None:
        super().__init__(self.public_message)
        self.tier = tier
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = max(1, retry_after)

    def headers(self) -> dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
        }


class GenerationError(GatewayError):
    """Base for failures of the external generation provider."""

    status_code = 500
    category = "generation_failed"
    public_message = "Internal server error during documentation generation"
    compliance_note = (
        "No documentation was issued. The attempt was recorded as a failed "
        "usage event and does not count as successful usage."
    )


class UpstreamQuotaExhausted(GenerationError):
    status_code = 402
    category = "upstream_quota_exhausted"
    public_message = "Generation provider quota exceeded. Please check billing."


class UpstreamAuthError(GenerationError):
    status_code = 401
    category = "upstream_auth_failed"
    public_message = "Invalid generation provider credentials configured."


class UpstreamTransientError(GenerationError):
    """Provider unavailable, rate limited, or otherwise failed."""


class UpstreamTimeout(UpstreamTransientError):
    """Provider did not answer within the configured timeout."""


class PersistenceError(Exception):
    """Cache or audit store unreachable. Never surfaced to callers."""


def error_body(
    exc: GatewayError,
    *,
    compliance_note: str | None = None,
    include_detail: bool = False,
) -> dict[str, Any]:
    """Build the JSON body for a caller-visible error."""
    body: dict[str, Any] = {"error": exc.category, "message": exc.message}
    if compliance_note:
        body["complianceNote"] = compliance_note
    if include_detail and exc.detail:
        body["details"] = exc.detail
    if isinstance(exc, InvalidRequestError) and exc.field:
        body["field"] = exc.field
    return body
