"""Audit sink - best-effort durable audit trail.

Every event gets two independent writes:

1. a structured log line (always, synchronously - it cannot fail the request)
2. a durable insert into the AuditStore

emit() hands the durable insert to a bounded BackgroundWorkerPool and
returns immediately; the request never waits for, or learns about, the
outcome. emit_now() performs the insert inline (bounded by the write
timeout) for the elevated-path access record, but swallows failures the
same way.

A failed insert is retried up to ``write_retries`` times, then logged at
error level and counted in audit_events_total{result="failed"}. Audit
completeness is a compliance goal, not a precondition for serving.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from docgateway.audit.events import AccessEvent, AuditEvent, UsageEvent
from docgateway.audit.store import AuditStore
from docgateway.config import Settings
from docgateway.infra.background_worker import BackgroundWorkerPool, Task
from docgateway.middleware.prometheus import record_audit_event

log = structlog.get_logger(__name__)


class AuditSink:
    """Fire-and-forget audit event pipeline.

    Usage:
        sink = AuditSink(store, write_timeout=2.0)
        await sink.start()
        sink.emit(UsageEvent.from_request(req, cache_served=True))
        await sink.stop()
    """

    def __init__(
        self,
        store: AuditStore,
        *,
        enabled: bool = True,
        queue_size: int = 1000,
        concurrency: int = 2,
        write_timeout: float = 2.0,
        write_retries: int = 1,
    ) -> None:
        self._store = store
        self._enabled = enabled
        self._write_timeout = write_timeout
        self._pool = BackgroundWorkerPool(
            max_workers=concurrency,
            queue_size=queue_size,
            max_retries=write_retries,
            job_timeout=write_timeout,
            on_failure=self._on_write_failed,
        )
        self.written_count = 0

    @classmethod
    def from_settings(cls, store: AuditStore, settings: Settings) -> AuditSink:
        return cls(
            store,
            enabled=settings.audit_enabled,
            queue_size=settings.audit_queue_size,
            concurrency=settings.audit_worker_concurrency,
            write_timeout=settings.audit_write_timeout_seconds,
            write_retries=settings.audit_write_retries,
        )

    @property
    def store(self) -> AuditStore:
        return self._store

    @property
    def running(self) -> bool:
        return self._pool.running

    async def start(self) -> None:
        await self._pool.start()

    async def stop(self) -> None:
        await self._pool.shutdown(drain=True)

    async def flush(self) -> None:
        """Wait for all queued events to be written (or given up on)."""
        await self._pool.join()

    def emit(self, event: AuditEvent) -> bool:
        """Queue an event for durable write without waiting.

        Returns True if the durable write was queued.
        """
        self._log_event(event)
        if not self._enabled:
            record_audit_event(event.kind, "disabled")
            return False

        accepted = self._pool.submit(lambda: self._write(event), kind=event.kind)
        if not accepted:
            log.error("audit.event_dropped", kind=event.kind, caller_id=event.caller_id)
            record_audit_event(event.kind, "dropped")
        return accepted

    async def emit_now(self, event: AuditEvent) -> bool:
        """Write an event inline. Never raises; returns True on a durable write."""
        self._log_event(event)
        if not self._enabled:
            record_audit_event(event.kind, "disabled")
            return False

        try:
            await asyncio.wait_for(self._write(event), timeout=self._write_timeout)
        except Exception as exc:
            log.error(
                "audit.write_failed",
                kind=event.kind,
                caller_id=event.caller_id,
                error=str(exc) or type(exc).__name__,
                inline=True,
            )
            record_audit_event(event.kind, "failed")
            return False
        return True

    async def _write(self, event: AuditEvent) -> None:
        if isinstance(event, AccessEvent):
            await self._store.record_access(event)
        elif isinstance(event, UsageEvent):
            await self._store.record_usage(event)
        else:
            raise TypeError(f"Unknown audit event type: {type(event).__name__}")
        self.written_count += 1
        record_audit_event(event.kind, "written")

    def _on_write_failed(self, task: Task) -> None:
        log.error("audit.write_failed", kind=task.kind, error=task.error, attempts=task.retry_count)
        record_audit_event(task.kind, "failed")

    def _log_event(self, event: AuditEvent) -> None:
        log.info(f"audit.{event.kind}", **event.to_log_dict())

    def stats(self) -> dict[str, Any]:
        return {
            "enabled": self._enabled,
            "running": self._pool.running,
            "store": self._store.name,
            "queued": self._pool.queue_size,
            "written": self.written_count,
            "failed": self._pool.failed_count,
            "dropped": self._pool.rejected_count,
        }
