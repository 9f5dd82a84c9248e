"""Tests for the audit pipeline.

Covers:
- Event invariants (identifier suffix only, immutability)
- AuditSink: fire-and-forget emit, inline emit_now, failure absorption,
  full queue, disabled mode
- BackgroundWorkerPool: retry, timeout, dead letter
- Stores: in-memory projections and SqlAuditStore on aiosqlite
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from docgateway.audit.events import AccessEvent, UsageEvent, UsageOutcome
from docgateway.audit.sink import AuditSink
from docgateway.audit.store import InMemoryAuditStore, SqlAuditStore
from docgateway.core.errors import PersistenceError
from docgateway.core.requests import DiagnosticRequest
from docgateway.infra.background_worker import BackgroundWorkerPool, TaskStatus

VIN = "1GKS2BKC5LR123456"
T0 = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


def _request(**overrides) -> DiagnosticRequest:
    fields = {
        "vehicle_identifier": VIN,
        "subsystem": "Engine",
        "notes": "Rough idle",
        "caller_id": "tech-0042",
        "authorized": True,
    }
    fields.update(overrides)
    return DiagnosticRequest.build(**fields)


def _usage(ts: datetime, *, subsystem: str = "engine", cache_served: bool = False,
           outcome: UsageOutcome = UsageOutcome.SUCCESS) -> UsageEvent:
    return UsageEvent(
        identifier_suffix="3456",
        subsystem=subsystem,
        cache_served=cache_served,
        outcome=outcome,
        timestamp=ts,
    )


def _access(ts: datetime, *, authorized: bool = True) -> AccessEvent:
    return AccessEvent(
        endpoint="/api/itar/generate-documentation",
        source_address="10.0.0.1",
        authorized=authorized,
        timestamp=ts,
    )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestAuditEvents:
    def test_usage_event_keeps_only_suffix(self):
        event = UsageEvent.from_request(_request(), cache_served=False)
        assert event.identifier_suffix == "3456"
        assert VIN not in str(event.to_log_dict())

    def test_full_identifier_rejected(self):
        with pytest.raises(ValueError):
            UsageEvent(identifier_suffix=VIN, subsystem="engine", cache_served=False)

    def test_enhanced_only_for_fresh_success(self):
        assert UsageEvent.from_request(_request(), cache_served=False).enhanced is True
        assert UsageEvent.from_request(_request(), cache_served=True).enhanced is False
        failed = UsageEvent.from_request(_request(), cache_served=False, outcome=UsageOutcome.FAILED)
        assert failed.enhanced is False

    def test_events_are_immutable(self):
        event = _access(T0)
        with pytest.raises(AttributeError):
            event.authorized = False  # type: ignore[misc]

    def test_anonymous_default(self):
        assert _access(T0).caller_id == "anonymous"


# ---------------------------------------------------------------------------
# AuditSink
# ---------------------------------------------------------------------------


class TestAuditSink:
    @pytest_asyncio.fixture
    async def store(self):
        return InMemoryAuditStore()

    @pytest_asyncio.fixture
    async def sink(self, store):
        sink = AuditSink(store, write_timeout=0.5, write_retries=0)
        await sink.start()
        yield sink
        await sink.stop()

    @pytest.mark.asyncio
    async def test_emit_returns_immediately_and_writes_in_background(self, sink, store):
        assert sink.emit(_usage(T0)) is True
        await sink.flush()
        assert len(store.usage_events) == 1
        assert sink.written_count == 1

    @pytest.mark.asyncio
    async def test_emit_does_not_wait_for_slow_store(self, store):
        release = asyncio.Event()

        async def slow_write(event):
            await release.wait()

        store.record_usage = slow_write  # type: ignore[method-assign]
        sink = AuditSink(store, write_timeout=5.0)
        await sink.start()
        try:
            assert sink.emit(_usage(T0)) is True
            assert sink.written_count == 0
            release.set()
            await sink.flush()
            assert sink.written_count == 1
        finally:
            await sink.stop()

    @pytest.mark.asyncio
    async def test_store_failure_is_absorbed(self, store):
        store.record_usage = AsyncMock(side_effect=PersistenceError("db down"))  # type: ignore[method-assign]
        sink = AuditSink(store, write_timeout=0.5, write_retries=1)
        await sink.start()
        try:
            assert sink.emit(_usage(T0)) is True
            await sink.flush()
        finally:
            await sink.stop()

        assert store.record_usage.await_count == 2
        assert sink.stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_emit_now_writes_inline(self, sink, store):
        assert await sink.emit_now(_access(T0)) is True
        assert len(store.access_events) == 1

    @pytest.mark.asyncio
    async def test_emit_now_swallows_failure(self, store):
        store.record_access = AsyncMock(side_effect=PersistenceError("db down"))  # type: ignore[method-assign]
        sink = AuditSink(store)
        assert await sink.emit_now(_access(T0)) is False

    @pytest.mark.asyncio
    async def test_emit_now_times_out(self, store):
        async def hang(event):
            await asyncio.sleep(10)

        store.record_access = hang  # type: ignore[method-assign]
        sink = AuditSink(store, write_timeout=0.05)
        assert await sink.emit_now(_access(T0)) is False

    @pytest.mark.asyncio
    async def test_full_queue_drops_durable_write(self, store):
        sink = AuditSink(store, queue_size=1)
        # Not started: the pool rejects every submission
        assert sink.emit(_usage(T0)) is False
        assert sink.stats()["dropped"] == 1

    @pytest.mark.asyncio
    async def test_disabled_sink_skips_store(self, store):
        sink = AuditSink(store, enabled=False)
        await sink.start()
        try:
            assert sink.emit(_usage(T0)) is False
            assert await sink.emit_now(_access(T0)) is False
            await sink.flush()
        finally:
            await sink.stop()
        assert store.usage_events == []
        assert store.access_events == []


# ---------------------------------------------------------------------------
# BackgroundWorkerPool
# ---------------------------------------------------------------------------


class TestBackgroundWorkerPool:
    @pytest.mark.asyncio
    async def test_retries_then_dead_letters(self):
        failures: list = []
        job = AsyncMock(side_effect=RuntimeError("boom"))
        pool = BackgroundWorkerPool(max_workers=1, max_retries=2, on_failure=failures.append)
        await pool.start()
        try:
            pool.submit(job, kind="test")
            await pool.join()
        finally:
            await pool.shutdown()

        assert job.await_count == 3
        dead = pool.get_dead_letter_queue()
        assert len(dead) == 1
        assert dead[0].status == TaskStatus.FAILED
        assert failures == dead

    @pytest.mark.asyncio
    async def test_job_timeout_counts_as_failure(self):
        async def hang():
            await asyncio.sleep(10)

        pool = BackgroundWorkerPool(max_workers=1, job_timeout=0.05)
        await pool.start()
        try:
            pool.submit(hang)
            await pool.join()
        finally:
            await pool.shutdown()
        assert pool.failed_count == 1

    @pytest.mark.asyncio
    async def test_queue_full_rejects(self):
        pool = BackgroundWorkerPool(max_workers=1, queue_size=1)
        release = asyncio.Event()

        async def blocker():
            await release.wait()

        await pool.start()
        try:
            assert pool.submit(blocker) is True
            await asyncio.sleep(0.01)  # worker picks up the first job
            assert pool.submit(blocker) is True
            assert pool.submit(blocker) is False
            assert pool.rejected_count == 1
            release.set()
            await pool.join()
        finally:
            await pool.shutdown()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


async def _seed(store) -> None:
    await store.record_access(_access(T0, authorized=True))
    await store.record_access(_access(T0 + timedelta(hours=1), authorized=False))
    await store.record_access(_access(T0 + timedelta(days=1), authorized=True))
    await store.record_usage(_usage(T0, subsystem="engine"))
    await store.record_usage(_usage(T0, subsystem="engine", cache_served=True))
    await store.record_usage(_usage(T0, subsystem="hvac", outcome=UsageOutcome.FAILED))
    await store.record_usage(_usage(T0 + timedelta(days=1), subsystem="hvac"))
    # Outside every queried range
    await store.record_access(_access(T0 - timedelta(days=30)))


async def _assert_projections(store) -> None:
    start, end = T0 - timedelta(hours=1), T0 + timedelta(days=2)

    summary = await store.access_summary(start, end)
    assert (summary.total, summary.authorized, summary.unauthorized) == (3, 2, 1)

    usage = {u.subsystem: u for u in await store.usage_by_subsystem(start, end)}
    assert (usage["engine"].count, usage["engine"].enhanced) == (2, 1)
    assert (usage["hvac"].count, usage["hvac"].enhanced, usage["hvac"].failed) == (1, 1, 1)

    daily = await store.daily_activity(start, end)
    assert [d.day for d in daily] == ["2026-10-01", "2026-10-02"]
    assert (daily[0].access_count, daily[0].authorized_count, daily[0].usage_count) == (2, 1, 2)
    assert (daily[1].access_count, daily[1].usage_count) == (1, 1)

    # Half-open range: an event exactly at `end` is excluded
    assert (await store.access_summary(start, T0)).total == 0


class TestInMemoryAuditStore:
    @pytest.mark.asyncio
    async def test_projections(self):
        store = InMemoryAuditStore()
        await _seed(store)
        await _assert_projections(store)


class TestSqlAuditStore:
    @pytest_asyncio.fixture
    async def store(self, fake_settings, tmp_path):
        from docgateway.database import close_db, create_tables, init_db

        settings = fake_settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}"}
        )
        session_factory = init_db(settings)
        await create_tables()
        yield SqlAuditStore(session_factory)
        await close_db()

    @pytest.mark.asyncio
    async def test_projections(self, store):
        await _seed(store)
        await _assert_projections(store)

    @pytest.mark.asyncio
    async def test_ping(self, store):
        assert await store.ping() is True

    @pytest.mark.asyncio
    async def test_session_factory_lifecycle(self, fake_settings, tmp_path):
        from docgateway.database import close_db, get_session_factory, init_db

        settings = fake_settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'lifecycle.db'}"}
        )
        factory = init_db(settings)
        assert get_session_factory() is factory

        await close_db()
        with pytest.raises(RuntimeError, match="init_db"):
            get_session_factory()

    @pytest.mark.asyncio
    async def test_write_failure_raises_persistence_error(self, fake_settings, tmp_path):
        from docgateway.database import close_db, init_db

        # Tables never created: inserts fail
        settings = fake_settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}"}
        )
        store = SqlAuditStore(init_db(settings))
        try:
            with pytest.raises(PersistenceError):
                await store.record_usage(_usage(T0))
        finally:
            await close_db()
