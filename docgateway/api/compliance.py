"""Compliance reporting endpoints.

GET /api/compliance/status  - last 24 hours of access/usage aggregation
GET /api/compliance/export  - aggregation for an explicit period (bearer token required)
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from docgateway.api.deps import get_reporter
from docgateway.auth.bearer import require_bearer
from docgateway.compliance.reporter import ComplianceReporter
from docgateway.core.errors import InvalidRequestError, PersistenceError

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/compliance", tags=["compliance"])

MAX_EXPORT_RANGE = timedelta(days=366)


def parse_period_bound(raw: str, *, field: str, end_of_range: bool = False) -> datetime:
    """Parse an ISO date or datetime query value into an aware UTC datetime.

    A bare date as the end bound covers that whole day.
    """
    value = raw.strip()
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            parsed = datetime.combine(day, time.min, tzinfo=UTC)
            return parsed + timedelta(days=1) if end_of_range else parsed
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise InvalidRequestError(
            f"{field} must be an ISO 8601 date or datetime",
            field=field,
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _unavailable(exc: PersistenceError) -> HTTPException:
    log.error("compliance.store_unavailable", error=str(exc))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Compliance data is temporarily unavailable",
    )


@router.get("/status", summary="Compliance status for the last 24 hours")
async def compliance_status(
    reporter: ComplianceReporter = Depends(get_reporter),
) -> dict[str, Any]:
    try:
        snapshot = await reporter.last_24h()
    except PersistenceError as exc:
        raise _unavailable(exc) from exc
    return snapshot.to_dict()


@router.get("/export", summary="Export compliance aggregation for a period")
async def compliance_export(
    start_date: str = Query(..., alias="startDate"),
    end_date: str = Query(..., alias="endDate"),
    claims: dict[str, Any] = Depends(require_bearer),
    reporter: ComplianceReporter = Depends(get_reporter),
) -> dict[str, Any]:
    start = parse_period_bound(start_date, field="startDate")
    end = parse_period_bound(end_date, field="endDate", end_of_range=True)
    if end <= start:
        raise InvalidRequestError("endDate must be after startDate", field="endDate")
    if end - start > MAX_EXPORT_RANGE:
        raise InvalidRequestError("Export period must not exceed 366 days", field="endDate")

    log.info("compliance.export_requested", requested_by=claims.get("sub"))
    try:
        export = await reporter.export(start, end)
    except PersistenceError as exc:
        raise _unavailable(exc) from exc
    return export.to_dict()
