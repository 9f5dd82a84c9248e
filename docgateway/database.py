"""Async SQLAlchemy plumbing for the audit trail.

The audit tables are the only relational state the gateway owns. The
application lifespan calls init_db() once and hands the returned session
factory to SqlAuditStore; nothing else opens sessions.

PostgreSQL (asyncpg) gets a small pre-pinged pool sized for one container.
SQLite (aiosqlite) is used by the test suite and takes the driver's default
pool, which does not accept the sizing arguments.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from docgateway.config import Settings

log = structlog.get_logger(__name__)

_SERVER_POOL_OPTIONS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_pre_ping": True,
    "pool_recycle": 300,
}


class Base(DeclarativeBase):
    """Shared metadata for access_logs and usage_logs."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _redacted(url: str) -> str:
    return url.rsplit("@", 1)[-1]


def init_db(settings: Settings) -> async_sessionmaker[AsyncSession]:
    """Create the engine for ``settings.database_url`` and return a session factory."""
    global _engine, _session_factory

    options: dict[str, Any] = {"echo": settings.db_echo_sql}
    if not settings.database_url.startswith("sqlite"):
        options.update(_SERVER_POOL_OPTIONS)

    _engine = create_async_engine(settings.database_url, **options)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    log.info("database.initialized", url=_redacted(settings.database_url))
    return _session_factory


async def create_tables() -> None:
    """Create any missing audit tables. Existing tables are left as they are."""
    import docgateway.models  # noqa: F401 - populates Base.metadata

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("database.tables_ensured", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
        log.info("database.closed")


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("init_db() has not been called")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("init_db() has not been called")
    return _session_factory
