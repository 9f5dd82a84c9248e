"""Audit trail: events, stores and the fire-and-forget sink."""

from docgateway.audit.events import AccessEvent, AuditEvent, UsageEvent, UsageOutcome
from docgateway.audit.sink import AuditSink
from docgateway.audit.store import (
    AccessSummary,
    AuditStore,
    DailyActivity,
    InMemoryAuditStore,
    SqlAuditStore,
    SubsystemUsage,
)

__all__ = [
    "AccessEvent",
    "AccessSummary",
    "AuditEvent",
    "AuditSink",
    "AuditStore",
    "DailyActivity",
    "InMemoryAuditStore",
    "SqlAuditStore",
    "SubsystemUsage",
    "UsageEvent",
    "UsageOutcome",
]
