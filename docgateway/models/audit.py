"""Audit trail tables - immutable records of access and usage.

Design principles:
- Append-only: never update or delete audit rows
- No full vehicle identifier is stored anywhere; usage rows keep the last
  four characters only
- Indexed for the compliance reporter's range scans (timestamp) and its
  per-caller / per-subsystem breakdowns
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from docgateway.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
_JSONType = JSON().with_variant(JSONB(), "postgresql")


class AccessLog(Base):
    """Attempted access to an elevated-compliance endpoint."""

    __tablename__ = "access_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    caller_id: Mapped[str] = mapped_column(String(255), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    source_address: Mapped[str] = mapped_column(String(64), nullable=False)
    authorized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative classes, hence the attribute name
    extra: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        _JSONType,
        nullable=False,
        default=dict,
    )

    __table_args__ = (
        Index("ix_access_logs_timestamp", "timestamp"),
        Index("ix_access_logs_caller_timestamp", "caller_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AccessLog id={self.id} caller={self.caller_id!r} authorized={self.authorized}>"


class UsageLog(Base):
    """A served (or failed) documentation generation."""

    __tablename__ = "usage_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    caller_id: Mapped[str] = mapped_column(String(255), nullable=False)
    identifier_suffix: Mapped[str] = mapped_column(
        String(4),
        nullable=False,
        comment="Last 4 characters of the vehicle identifier",
    )
    subsystem: Mapped[str] = mapped_column(String(255), nullable=False)
    submitter: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    organization: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    enhanced: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Freshly generated and enriched (not served from cache)",
    )
    cache_served: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False, default="success")
    extra: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        _JSONType,
        nullable=False,
        default=dict,
    )

    __table_args__ = (
        Index("ix_usage_logs_timestamp", "timestamp"),
        Index("ix_usage_logs_caller_timestamp", "caller_id", "timestamp"),
        Index("ix_usage_logs_subsystem_timestamp", "subsystem", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<UsageLog id={self.id} subsystem={self.subsystem!r} outcome={self.outcome}>"
