"""Audit event records.

Two kinds of event flow through the audit sink:

- AccessEvent: an attempt to use an elevated-compliance endpoint, written
  whether or not the caller was authorized.
- UsageEvent: a documentation response that was served (fresh or from
  cache), or a generation attempt that failed.

Both are frozen dataclasses: once emitted they belong to the sink and are
never modified. UsageEvent refuses anything longer than a 4-character
identifier suffix, so a full vehicle identifier cannot reach the audit
trail by accident.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from docgateway.core.requests import ANONYMOUS_CALLER, DiagnosticRequest

IDENTIFIER_SUFFIX_LENGTH = 4


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UsageOutcome(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class AccessEvent:
    endpoint: str
    source_address: str
    authorized: bool
    caller_id: str = ANONYMOUS_CALLER
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    kind = "access"

    def to_log_dict(self) -> dict[str, Any]:
        return {
            "caller_id": self.caller_id,
            "endpoint": self.endpoint,
            "source_address": self.source_address,
            "authorized": self.authorized,
            "event_timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class UsageEvent:
    identifier_suffix: str
    subsystem: str
    cache_served: bool
    caller_id: str = ANONYMOUS_CALLER
    submitter: str = ""
    organization: str = ""
    outcome: UsageOutcome = UsageOutcome.SUCCESS
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    kind = "usage"

    def __post_init__(self) -> None:
        if len(self.identifier_suffix) > IDENTIFIER_SUFFIX_LENGTH:
            raise ValueError(
                "UsageEvent must carry at most the last "
                f"{IDENTIFIER_SUFFIX_LENGTH} characters of the vehicle identifier"
            )

    @property
    def enhanced(self) -> bool:
        """True for a freshly generated, enriched response."""
        return self.outcome == UsageOutcome.SUCCESS and not self.cache_served

    @classmethod
    def from_request(
        cls,
        request: DiagnosticRequest,
        *,
        cache_served: bool,
        outcome: UsageOutcome = UsageOutcome.SUCCESS,
        metadata: dict[str, Any] | None = None,
    ) -> UsageEvent:
        return cls(
            identifier_suffix=request.identifier_suffix,
            subsystem=request.subsystem,
            cache_served=cache_served,
            caller_id=request.caller_id,
            submitter=request.submitter,
            organization=request.organization,
            outcome=outcome,
            metadata=dict(metadata or {}),
        )

    def to_log_dict(self) -> dict[str, Any]:
        return {
            "caller_id": self.caller_id,
            "identifier_suffix": self.identifier_suffix,
            "subsystem": self.subsystem,
            "organization": self.organization,
            "cache_served": self.cache_served,
            "outcome": str(self.outcome),
            "event_timestamp": self.timestamp.isoformat(),
        }


AuditEvent = AccessEvent | UsageEvent
