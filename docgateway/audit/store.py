"""Audit stores: the durable half of the audit pipeline.

AuditStore defines both the append operations used by the AuditSink and
the read projections used by the ComplianceReporter. Two implementations:

- SqlAuditStore: access_logs / usage_logs tables via SQLAlchemy async
- InMemoryAuditStore: lists in process memory, for dev runs and tests

Stores raise PersistenceError when the backing store is unreachable. The
sink absorbs it on the write path; the reporter lets it surface as 503.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import case, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgateway.audit.events import AccessEvent, UsageEvent, UsageOutcome
from docgateway.core.errors import PersistenceError
from docgateway.models.audit import AccessLog, UsageLog

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AccessSummary:
    total: int
    authorized: int

    @property
    def unauthorized(self) -> int:
        return self.total - self.authorized


@dataclass(frozen=True)
class SubsystemUsage:
    subsystem: str
    count: int
    enhanced: int
    failed: int = 0


@dataclass(frozen=True)
class DailyActivity:
    day: str  # ISO date, YYYY-MM-DD
    access_count: int
    authorized_count: int
    usage_count: int


class AuditStore(ABC):
    """Append-only audit persistence plus the reporter's read projections.

    Ranges are half-open: ``start <= timestamp < end``.
    """

    name: str = "abstract"

    @abstractmethod
    async def record_access(self, event: AccessEvent) -> None: ...

    @abstractmethod
    async def record_usage(self, event: UsageEvent) -> None: ...

    @abstractmethod
    async def access_summary(self, start: datetime, end: datetime) -> AccessSummary: ...

    @abstractmethod
    async def usage_by_subsystem(self, start: datetime, end: datetime) -> list[SubsystemUsage]: ...

    @abstractmethod
    async def daily_activity(self, start: datetime, end: datetime) -> list[DailyActivity]: ...

    async def ping(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# SQL store
# ---------------------------------------------------------------------------


class SqlAuditStore(AuditStore):
    """Audit store over the access_logs / usage_logs tables.

    Each write uses its own short-lived session so a failed audit insert
    can never roll back anything else.
    """

    name = "sql"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record_access(self, event: AccessEvent) -> None:
        row = AccessLog(
            timestamp=event.timestamp,
            caller_id=event.caller_id,
            endpoint=event.endpoint,
            source_address=event.source_address,
            authorized=event.authorized,
            extra=dict(event.metadata),
        )
        await self._insert(row)

    async def record_usage(self, event: UsageEvent) -> None:
        row = UsageLog(
            timestamp=event.timestamp,
            caller_id=event.caller_id,
            identifier_suffix=event.identifier_suffix,
            subsystem=event.subsystem,
            submitter=event.submitter,
            organization=event.organization,
            enhanced=event.enhanced,
            cache_served=event.cache_served,
            outcome=str(event.outcome),
            extra=dict(event.metadata),
        )
        await self._insert(row)

    async def _insert(self, row: AccessLog | UsageLog) -> None:
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"audit insert failed: {exc}") from exc

    async def access_summary(self, start: datetime, end: datetime) -> AccessSummary:
        stmt = select(
            func.count(AccessLog.id),
            func.coalesce(func.sum(case((AccessLog.authorized.is_(True), 1), else_=0)), 0),
        ).where(AccessLog.timestamp >= start, AccessLog.timestamp < end)
        try:
            async with self._session_factory() as session:
                total, authorized = (await session.execute(stmt)).one()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"access summary query failed: {exc}") from exc
        return AccessSummary(total=int(total or 0), authorized=int(authorized or 0))

    async def usage_by_subsystem(self, start: datetime, end: datetime) -> list[SubsystemUsage]:
        success = UsageLog.outcome == str(UsageOutcome.SUCCESS)
        stmt = (
            select(
                UsageLog.subsystem,
                func.sum(case((success, 1), else_=0)),
                func.sum(case((success & UsageLog.enhanced.is_(True), 1), else_=0)),
                func.sum(case((success, 0), else_=1)),
            )
            .where(UsageLog.timestamp >= start, UsageLog.timestamp < end)
            .group_by(UsageLog.subsystem)
            .order_by(UsageLog.subsystem)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"usage breakdown query failed: {exc}") from exc
        return [
            SubsystemUsage(
                subsystem=subsystem,
                count=int(count or 0),
                enhanced=int(enhanced or 0),
                failed=int(failed or 0),
            )
            for subsystem, count, enhanced, failed in rows
        ]

    async def daily_activity(self, start: datetime, end: datetime) -> list[DailyActivity]:
        access_day = func.date(AccessLog.timestamp)
        access_stmt = (
            select(
                access_day,
                func.count(AccessLog.id),
                func.sum(case((AccessLog.authorized.is_(True), 1), else_=0)),
            )
            .where(AccessLog.timestamp >= start, AccessLog.timestamp < end)
            .group_by(access_day)
        )
        usage_day = func.date(UsageLog.timestamp)
        usage_stmt = (
            select(usage_day, func.count(UsageLog.id))
            .where(
                UsageLog.timestamp >= start,
                UsageLog.timestamp < end,
                UsageLog.outcome == str(UsageOutcome.SUCCESS),
            )
            .group_by(usage_day)
        )
        try:
            async with self._session_factory() as session:
                access_rows = (await session.execute(access_stmt)).all()
                usage_rows = (await session.execute(usage_stmt)).all()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"daily activity query failed: {exc}") from exc

        days: dict[str, list[int]] = defaultdict(lambda: [0, 0, 0])
        for day, count, authorized in access_rows:
            days[str(day)][0] = int(count or 0)
            days[str(day)][1] = int(authorized or 0)
        for day, count in usage_rows:
            days[str(day)][2] = int(count or 0)
        return [
            DailyActivity(day=day, access_count=a, authorized_count=au, usage_count=u)
            for day, (a, au, u) in sorted(days.items())
        ]

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as exc:
            log.warning("audit.store.ping_failed", error=str(exc))
            return False


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryAuditStore(AuditStore):
    """List-backed audit store. Does NOT persist across process restarts."""

    name = "memory"

    def __init__(self) -> None:
        self.access_events: list[AccessEvent] = []
        self.usage_events: list[UsageEvent] = []

    async def record_access(self, event: AccessEvent) -> None:
        self.access_events.append(event)

    async def record_usage(self, event: UsageEvent) -> None:
        self.usage_events.append(event)

    async def access_summary(self, start: datetime, end: datetime) -> AccessSummary:
        in_range = [e for e in self.access_events if start <= e.timestamp < end]
        return AccessSummary(
            total=len(in_range),
            authorized=sum(1 for e in in_range if e.authorized),
        )

    async def usage_by_subsystem(self, start: datetime, end: datetime) -> list[SubsystemUsage]:
        buckets: dict[str, list[int]] = defaultdict(lambda: [0, 0, 0])
        for event in self.usage_events:
            if not start <= event.timestamp < end:
                continue
            bucket = buckets[event.subsystem]
            if event.outcome == UsageOutcome.SUCCESS:
                bucket[0] += 1
                bucket[1] += int(event.enhanced)
            else:
                bucket[2] += 1
        return [
            SubsystemUsage(subsystem=name, count=c, enhanced=e, failed=f)
            for name, (c, e, f) in sorted(buckets.items())
        ]

    async def daily_activity(self, start: datetime, end: datetime) -> list[DailyActivity]:
        days: dict[str, list[int]] = defaultdict(lambda: [0, 0, 0])
        for access in self.access_events:
            if start <= access.timestamp < end:
                bucket = days[access.timestamp.date().isoformat()]
                bucket[0] += 1
                bucket[1] += int(access.authorized)
        for usage in self.usage_events:
            if start <= usage.timestamp < end and usage.outcome == UsageOutcome.SUCCESS:
                days[usage.timestamp.date().isoformat()][2] += 1
        return [
            DailyActivity(day=day, access_count=a, authorized_count=au, usage_count=u)
            for day, (a, au, u) in sorted(days.items())
        ]
