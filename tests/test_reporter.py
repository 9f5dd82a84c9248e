"""Tests for compliance reporting."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from docgateway.audit.events import AccessEvent, UsageEvent, UsageOutcome
from docgateway.audit.store import InMemoryAuditStore
from docgateway.compliance.reporter import ComplianceReporter, compliance_score
from docgateway.core.errors import PersistenceError

NOW = datetime(2026, 10, 2, 9, 30, tzinfo=UTC)


def _access(ts: datetime, authorized: bool) -> AccessEvent:
    return AccessEvent(
        endpoint="/api/itar/generate-documentation",
        source_address="10.0.0.1",
        authorized=authorized,
        caller_id="tech-0042",
        timestamp=ts,
    )


def _usage(ts: datetime, subsystem: str, *, cache_served: bool = False) -> UsageEvent:
    return UsageEvent(
        identifier_suffix="3456",
        subsystem=subsystem,
        cache_served=cache_served,
        timestamp=ts,
    )


@pytest.mark.parametrize(
    ("total", "authorized", "expected"),
    [
        (0, 0, 100.0),
        (3, 3, 100.0),
        (3, 2, 66.67),
        (3, 0, 0.0),
        (8, 1, 12.5),
    ],
)
def test_compliance_score(total, authorized, expected):
    assert compliance_score(total, authorized) == expected


class TestComplianceReporter:
    @pytest.mark.asyncio
    async def test_empty_window_is_fully_compliant(self):
        snapshot = await ComplianceReporter(InMemoryAuditStore()).last_24h(now=NOW)
        body = snapshot.to_dict()

        assert body["accessAttempts"] == {"total": 0, "authorized": 0, "unauthorized": 0}
        assert body["complianceScore"] == 100.0
        assert body["usageBySubsystem"] == {}
        assert body["period"]["end"] == NOW.isoformat()
        assert body["period"]["start"] == (NOW - timedelta(hours=24)).isoformat()

    @pytest.mark.asyncio
    async def test_last_24h_ignores_older_events(self):
        store = InMemoryAuditStore()
        await store.record_access(_access(NOW - timedelta(hours=1), True))
        await store.record_access(_access(NOW - timedelta(hours=2), True))
        await store.record_access(_access(NOW - timedelta(hours=3), False))
        await store.record_access(_access(NOW - timedelta(hours=25), False))
        await store.record_usage(_usage(NOW - timedelta(hours=1), "engine"))
        await store.record_usage(_usage(NOW - timedelta(hours=1), "engine", cache_served=True))
        await store.record_usage(_usage(NOW - timedelta(days=3), "hvac"))

        body = (await ComplianceReporter(store).last_24h(now=NOW)).to_dict()

        assert body["accessAttempts"] == {"total": 3, "authorized": 2, "unauthorized": 1}
        assert body["complianceScore"] == 66.67
        assert body["usageBySubsystem"] == {"engine": {"count": 2, "enhanced": 1}}

    @pytest.mark.asyncio
    async def test_export_includes_daily_and_failed_counts(self):
        store = InMemoryAuditStore()
        day1 = datetime(2026, 9, 1, 10, tzinfo=UTC)
        day2 = day1 + timedelta(days=1)
        await store.record_access(_access(day1, True))
        await store.record_access(_access(day2, False))
        await store.record_usage(_usage(day1, "brakes"))
        await store.record_usage(
            UsageEvent(
                identifier_suffix="3456",
                subsystem="brakes",
                cache_served=False,
                outcome=UsageOutcome.FAILED,
                timestamp=day2,
            )
        )

        export = await ComplianceReporter(store).export(
            datetime(2026, 9, 1, tzinfo=UTC), datetime(2026, 9, 3, tzinfo=UTC)
        )
        body = export.to_dict()

        assert body["complianceScore"] == 50.0
        assert body["daily"] == [
            {"day": "2026-09-01", "accessCount": 1, "authorizedCount": 1, "usageCount": 1},
            {"day": "2026-09-02", "accessCount": 1, "authorizedCount": 0, "usageCount": 0},
        ]
        assert body["subsystems"] == [{"subsystem": "brakes", "count": 1, "enhanced": 1, "failed": 1}]
        assert "generatedAt" in body

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self):
        store = InMemoryAuditStore()
        store.access_summary = AsyncMock(side_effect=PersistenceError("db down"))
        with pytest.raises(PersistenceError):
            await ComplianceReporter(store).last_24h(now=NOW)
