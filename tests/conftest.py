"""
Shared test fixtures for pytest.

Provides common fakes and test data for all test modules:
- fake_settings: Test environment configuration (in-memory everything)
- fake_provider: Generation provider double that counts calls
- audit_store: In-memory audit store
- app / client: FastAPI app with lifespan running + httpx AsyncClient
- valid_body: A well-formed documentation request body
- make_token: Helper to create bearer tokens for protected endpoints
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from pydantic import SecretStr

from docgateway.audit.store import InMemoryAuditStore
from docgateway.auth.bearer import create_token
from docgateway.config import Environment, Settings, get_settings
from docgateway.core.requests import DiagnosticRequest
from docgateway.generation.client import GeneratedContent

TEST_JWT_SECRET = "test-jwt-secret-for-pytest-only"
TEST_VIN = "1GKS2BKC5LR123456"


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Fakes
# ------------------------------------------------------------------ #

class FakeProvider:
    """GenerationProvider double.

    Set ``error`` to make every call raise it, ``delay`` to hold each call
    open (for coalescing tests).
    """

    model = "fake-gpt"
    configured = True

    def __init__(self, content: str = "**CAUSE:** Worn plugs.\n**CORRECTION:** Replaced plugs.") -> None:
        self.content = content
        self.error: BaseException | None = None
        self.delay: float = 0.0
        self.calls: list[DiagnosticRequest] = []

    async def generate(self, request: DiagnosticRequest) -> GeneratedContent:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GeneratedContent(content=self.content, model=self.model)


def make_token(sub: str = "auditor-1", *, secret: str = TEST_JWT_SECRET, **kwargs: Any) -> str:
    """Create a test bearer token using HS256."""
    return create_token(sub=sub, secret=secret, **kwargs)


# ------------------------------------------------------------------ #
# Settings & App Fixtures
# ------------------------------------------------------------------ #

@pytest.fixture
def fake_settings() -> Settings:
    """Settings for tests: in-memory stores, short audit timeouts."""
    return Settings(
        environment=Environment.TEST,
        jwt_secret=SecretStr(TEST_JWT_SECRET),
        litellm_api_key=SecretStr("sk-test"),
        database_url="sqlite+aiosqlite:///:memory:",
        audit_store_backend="memory",
        cache_backend="memory",
        rate_limit_backend="memory",
        audit_write_timeout_seconds=0.5,
        audit_write_retries=0,
    )


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def valid_body() -> dict[str, Any]:
    return {
        "vehicleIdentifier": TEST_VIN,
        "subsystem": "Engine",
        "diagnosticCodes": "P0300, p0171",
        "notes": "Customer reports rough idle and flashing check engine light on cold start.",
        "submitter": "J. Rivera",
        "organization": "Northside Motors",
        "authorization": {"callerId": "tech-0042", "authorized": True},
    }


@pytest_asyncio.fixture
async def app(fake_settings, fake_provider, audit_store) -> AsyncGenerator[FastAPI, None]:
    """FastAPI app with the lifespan running (components on app.state)."""
    from docgateway.main import create_app

    application = create_app(fake_settings, generator=fake_provider, audit_store=audit_store)
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
