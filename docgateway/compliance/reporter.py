"""Compliance reporting over the audit trail.

Read-only projections for a half-open time range [start, end):

- status():  access totals, authorized vs unauthorized, compliance score and
             per-subsystem usage (the /api/compliance/status view)
- export():  the same plus per-day activity (the authenticated export)

Score = authorized / total * 100, rounded to 2 places. A window with no
access attempts scores 100.0: nothing unauthorized happened in it.

Store failures propagate as PersistenceError; the API turns them into 503.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from docgateway.audit.store import AuditStore, DailyActivity, SubsystemUsage

log = structlog.get_logger(__name__)

STATUS_WINDOW = timedelta(hours=24)


def compliance_score(total: int, authorized: int) -> float:
    if total <= 0:
        return 100.0
    return round(authorized / total * 100, 2)


@dataclass(frozen=True)
class ComplianceSnapshot:
    period_start: datetime
    period_end: datetime
    total: int
    authorized: int
    unauthorized: int
    score: float
    usage: list[SubsystemUsage]

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": {
                "start": self.period_start.isoformat(),
                "end": self.period_end.isoformat(),
            },
            "accessAttempts": {
                "total": self.total,
                "authorized": self.authorized,
                "unauthorized": self.unauthorized,
            },
            "complianceScore": self.score,
            "usageBySubsystem": {
                u.subsystem: {"count": u.count, "enhanced": u.enhanced} for u in self.usage
            },
        }


@dataclass(frozen=True)
class ComplianceExport:
    snapshot: ComplianceSnapshot
    daily: list[DailyActivity]
    generated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.snapshot.to_dict(),
            "generatedAt": self.generated_at.isoformat(),
            "daily": [
                {
                    "day": d.day,
                    "accessCount": d.access_count,
                    "authorizedCount": d.authorized_count,
                    "usageCount": d.usage_count,
                }
                for d in self.daily
            ],
            "subsystems": [
                {
                    "subsystem": u.subsystem,
                    "count": u.count,
                    "enhanced": u.enhanced,
                    "failed": u.failed,
                }
                for u in self.snapshot.usage
            ],
        }


class ComplianceReporter:
    """Aggregates the audit store into compliance views.

    Usage:
        reporter = ComplianceReporter(store)
        snapshot = await reporter.last_24h()
        export = await reporter.export(start, end)
    """

    def __init__(self, store: AuditStore) -> None:
        self._store = store

    async def status(self, start: datetime, end: datetime) -> ComplianceSnapshot:
        summary = await self._store.access_summary(start, end)
        usage = await self._store.usage_by_subsystem(start, end)
        return ComplianceSnapshot(
            period_start=start,
            period_end=end,
            total=summary.total,
            authorized=summary.authorized,
            unauthorized=summary.unauthorized,
            score=compliance_score(summary.total, summary.authorized),
            usage=usage,
        )

    async def last_24h(self, now: datetime | None = None) -> ComplianceSnapshot:
        end = now or datetime.now(UTC)
        return await self.status(end - STATUS_WINDOW, end)

    async def export(self, start: datetime, end: datetime) -> ComplianceExport:
        log.info("compliance.export", period_start=start.isoformat(), period_end=end.isoformat())
        snapshot = await self.status(start, end)
        daily = await self._store.daily_activity(start, end)
        return ComplianceExport(snapshot=snapshot, daily=daily, generated_at=datetime.now(UTC))
