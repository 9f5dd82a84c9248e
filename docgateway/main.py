"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment) - once, frozen
2. Configure structured logging
3. Initialize the audit store (database engine + tables, or in-memory)
4. Start the audit sink worker pool
5. Build the response cache, generation client and rate governor
6. Register middleware and routers

Shutdown order:
1. Drain the audit sink
2. Close the cache backend and rate limit connections
3. Close the DB connection pool
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from docgateway.api.deps import is_elevated
from docgateway.api.router import api_router, public_router
from docgateway.audit.sink import AuditSink
from docgateway.audit.store import AuditStore, InMemoryAuditStore, SqlAuditStore
from docgateway.cache.backend import CacheBackend, get_cache_backend
from docgateway.cache.response_cache import ResponseCache
from docgateway.compliance.reporter import ComplianceReporter
from docgateway.config import Settings, get_settings
from docgateway.core.errors import GatewayError, RateLimitExceeded, error_body
from docgateway.core.rate_limit import build_rate_governor, compliance_note_for
from docgateway.database import close_db, create_tables, init_db
from docgateway.generation.client import GenerationClient, GenerationProvider
from docgateway.middleware.prometheus import PrometheusMiddleware, get_metrics
from docgateway.services.documentation import DocumentationOrchestrator
from docgateway.telemetry.logging import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)

ELEVATED_COMPLIANCE_NOTE = (
    "This request was made on an elevated-compliance path. Access attempts on "
    "this path are attributed and retained in the compliance audit trail."
)


async def _build_audit_store(settings: Settings) -> tuple[AuditStore, bool]:
    """Return the configured audit store and whether a DB engine was opened."""
    if settings.audit_store_backend == "memory":
        log.warning("audit.store_in_memory", message="Audit trail will not survive a restart")
        return InMemoryAuditStore(), False

    session_factory = init_db(settings)
    if settings.db_create_tables:
        try:
            await create_tables()
        except (SQLAlchemyError, OSError) as exc:
            # Keep serving; audit writes fail and are counted until the DB is back
            log.error("database.create_tables_failed", error=str(exc))
    return SqlAuditStore(session_factory), True


def _make_lifespan(
    *,
    generator: GenerationProvider | None,
    audit_store: AuditStore | None,
    cache_backend: CacheBackend | None,
) -> Any:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan: startup and shutdown."""
        settings: Settings = app.state.settings

        # Configure structured logging first (before any log calls)
        configure_logging(json_logs=settings.is_prod, log_level=settings.log_level)

        log.info(
            "app.starting",
            environment=settings.environment,
            db_url=settings.database_url.split("@")[-1],
            cache_backend=settings.cache_backend,
            rate_limit_backend=settings.rate_limit_backend,
        )

        opened_db = False
        store = audit_store
        if store is None:
            store, opened_db = await _build_audit_store(settings)

        sink = AuditSink.from_settings(store, settings)
        await sink.start()

        cache = ResponseCache(
            cache_backend or get_cache_backend(settings),
            enabled=settings.cache_enabled,
            default_ttl=settings.cache_ttl_seconds,
        )
        provider = generator or GenerationClient(settings)
        governor = build_rate_governor(settings)

        app.state.audit_store = store
        app.state.audit_sink = sink
        app.state.response_cache = cache
        app.state.generator = provider
        app.state.rate_governor = governor
        app.state.orchestrator = DocumentationOrchestrator(
            settings,
            cache=cache,
            generator=provider,
            audit_sink=sink,
        )
        app.state.reporter = ComplianceReporter(store)

        log.info("app.ready")
        yield

        await sink.stop()
        await cache.backend.close()
        await governor.close()
        if opened_db:
            await close_db()
        log.info("app.shutdown", audit=sink.stats())

    return lifespan


def create_app(
    settings: Settings | None = None,
    *,
    generator: GenerationProvider | None = None,
    audit_store: AuditStore | None = None,
    cache_backend: CacheBackend | None = None,
) -> FastAPI:
    """Application factory.

    The keyword arguments replace the components built from settings;
    tests use them to inject fakes.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Diagnostic Documentation Gateway",
        description=(
            "Generates repair-order documentation with response caching, "
            "tiered rate limiting and a compliance audit trail."
        ),
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=_make_lifespan(
            generator=generator,
            audit_store=audit_store,
            cache_backend=cache_backend,
        ),
    )
    app.state.settings = settings

    # ------------------------------------------------------------------ #
    # Middleware (added in reverse order - last added = first executed)
    # ------------------------------------------------------------------ #

    # Prometheus metrics
    app.add_middleware(PrometheusMiddleware)

    # Unique request ID for log correlation and audit trails
    app.add_middleware(RequestIdMiddleware)

    # ------------------------------------------------------------------ #
    # Routers
    # ------------------------------------------------------------------ #
    app.include_router(public_router)
    app.include_router(api_router)

    # Prometheus metrics endpoint
    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Any:
        """Prometheus metrics endpoint."""
        return get_metrics()

    # ------------------------------------------------------------------ #
    # Exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        if isinstance(exc, RateLimitExceeded):
            note: str | None = compliance_note_for(exc)
        elif exc.compliance_note:
            note = exc.compliance_note
        elif is_elevated(request):
            note = ELEVATED_COMPLIANCE_NOTE
        else:
            note = None

        log.info(
            "app.request_rejected",
            path=request.url.path,
            status=exc.status_code,
            category=exc.category,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc, compliance_note=note, include_detail=not settings.is_prod),
            headers=exc.headers(),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = str(first.get("loc", ("", ""))[-1]) or None
        body: dict[str, Any] = {
            "error": "invalid_request",
            "message": f"Invalid value for {field}" if field else "Malformed request",
        }
        if field:
            body["field"] = field
        if is_elevated(request):
            body["complianceNote"] = ELEVATED_COMPLIANCE_NOTE
        if not settings.is_prod:
            body["details"] = [
                {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")} for e in errors
            ]
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "Internal server error"},
        )

    return app


# Module-level app instance for uvicorn
app = create_app()
