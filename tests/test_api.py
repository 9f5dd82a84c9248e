"""HTTP-level tests through the full app (lifespan, middleware, routers)."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from docgateway.audit.events import AccessEvent, UsageOutcome
from docgateway.core.errors import UpstreamAuthError, UpstreamQuotaExhausted
from docgateway.main import create_app
from docgateway.middleware.prometheus import route_template
from tests.conftest import TEST_VIN, make_token

STANDARD = "/api/generate-documentation"
ELEVATED = "/api/itar/generate-documentation"


@pytest_asyncio.fixture
async def limited_client(fake_settings, fake_provider, audit_store) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Client for an app with tiny rate ceilings."""
    settings = fake_settings.model_copy(
        update={"rate_limit_general_max": 5, "rate_limit_elevated_max": 2}
    )
    application = create_app(settings, generator=fake_provider, audit_store=audit_store)
    async with application.router.lifespan_context(application):
        transport = httpx.ASGITransport(app=application)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            yield c


async def _flush(app) -> None:
    await app.state.audit_sink.flush()


# ---------------------------------------------------------------------------
# Documentation endpoints
# ---------------------------------------------------------------------------


class TestGenerateDocumentation:
    @pytest.mark.asyncio
    async def test_success_envelope(self, client, app, valid_body, audit_store):
        response = await client.post(STANDARD, json=valid_body)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["content"].startswith("**CAUSE:**")
        assert body["enrichment"]["category"] == "engine"
        assert body["enrichment"]["diagnosticCodes"] == ["P0300", "P0171"]
        assert "compliance" not in body
        assert body["metadata"]["identifierSuffix"] == "3456"
        assert body["metadata"]["cacheServed"] is False
        assert body["metadata"]["auditId"].startswith("aud_")
        assert TEST_VIN not in response.text

        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Remaining"] == "99"

        await _flush(app)
        assert len(audit_store.usage_events) == 1
        assert audit_store.usage_events[0].caller_id == "tech-0042"

    @pytest.mark.asyncio
    async def test_second_identical_request_is_cache_served(self, client, valid_body, fake_provider):
        first = (await client.post(STANDARD, json=valid_body)).json()
        second = (await client.post(STANDARD, json=valid_body)).json()

        assert len(fake_provider.calls) == 1
        assert second["metadata"]["cacheServed"] is True
        assert second["content"] == first["content"]
        assert second["metadata"]["auditId"] != first["metadata"]["auditId"]

    @pytest.mark.asyncio
    async def test_legacy_field_names_accepted(self, client, fake_provider):
        legacy = {
            "vin": TEST_VIN,
            "system": "HVAC",
            "dtcCodes": "B1234",
            "techNotes": "Blower inoperative on all speeds.",
            "technician": "A. Chen",
            "dealership": "Eastside Auto",
        }
        response = await client.post(STANDARD, json=legacy)

        assert response.status_code == 200
        request = fake_provider.calls[0]
        assert request.subsystem == "HVAC"
        assert request.organization == "Eastside Auto"
        assert request.caller_id == "anonymous"

    @pytest.mark.asyncio
    async def test_short_identifier_rejected_before_anything_runs(self, client, app, valid_body, fake_provider, audit_store):
        valid_body["vehicleIdentifier"] = "SHORT123"
        response = await client.post(STANDARD, json=valid_body)

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_request"
        assert body["field"] == "vehicleIdentifier"
        assert "complianceNote" not in body

        await _flush(app)
        assert fake_provider.calls == []
        assert audit_store.usage_events == []

    @pytest.mark.asyncio
    async def test_missing_fields_listed(self, client):
        response = await client.post(STANDARD, json={"subsystem": "Engine"})
        assert response.status_code == 400
        assert response.json()["message"] == "Missing required fields: vehicleIdentifier, notes"

    @pytest.mark.asyncio
    async def test_malformed_body_is_400(self, client, valid_body):
        valid_body["authorization"] = "yes"
        response = await client.post(STANDARD, json=valid_body)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert response.json()["field"] == "authorization"

    @pytest.mark.asyncio
    async def test_quota_exhausted_is_402_with_note(self, client, app, valid_body, fake_provider, audit_store):
        fake_provider.error = UpstreamQuotaExhausted(detail="insufficient_quota")

        response = await client.post(STANDARD, json=valid_body)

        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "upstream_quota_exhausted"
        assert "complianceNote" in body
        assert body["details"] == "insufficient_quota"

        await _flush(app)
        assert [e.outcome for e in audit_store.usage_events] == [UsageOutcome.FAILED]

    @pytest.mark.asyncio
    async def test_provider_auth_failure_is_401(self, client, valid_body, fake_provider):
        fake_provider.error = UpstreamAuthError()
        response = await client.post(STANDARD, json=valid_body)
        assert response.status_code == 401
        assert response.json()["error"] == "upstream_auth_failed"

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client, valid_body):
        response = await client.post(STANDARD, json=valid_body, headers={"X-Request-ID": "req-abc"})
        assert response.headers["X-Request-ID"] == "req-abc"


class TestElevatedPath:
    @pytest.mark.asyncio
    async def test_compliance_block_and_access_record(self, client, valid_body, audit_store):
        response = await client.post(ELEVATED, json=valid_body)

        assert response.status_code == 200
        compliance = response.json()["compliance"]
        assert compliance["attribution"] == "tech-0042"
        assert compliance["authorized"] is True
        assert compliance["tracked"] is True
        assert compliance["auditId"] == response.json()["metadata"]["auditId"]

        assert len(audit_store.access_events) == 1
        access: AccessEvent = audit_store.access_events[0]
        assert access.endpoint == ELEVATED
        assert access.source_address == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_elevated_header_tags_standard_path(self, client, valid_body, audit_store):
        response = await client.post(STANDARD, json=valid_body, headers={"X-Compliance-Elevated": "true"})
        assert "compliance" in response.json()
        assert len(audit_store.access_events) == 1

    @pytest.mark.asyncio
    async def test_errors_on_elevated_path_carry_note(self, client, valid_body):
        valid_body["vehicleIdentifier"] = "SHORT123"
        response = await client.post(ELEVATED, json=valid_body)
        assert response.status_code == 400
        assert "complianceNote" in response.json()

    @pytest.mark.asyncio
    async def test_elevated_ceiling_is_stricter(self, limited_client, valid_body, audit_store):
        for _ in range(2):
            assert (await limited_client.post(ELEVATED, json=valid_body)).status_code == 200

        rejected = await limited_client.post(ELEVATED, json=valid_body)
        assert rejected.status_code == 429
        body = rejected.json()
        assert body["error"] == "rate_limited"
        assert body["complianceNote"].startswith("Compliance-mandated")
        assert int(rejected.headers["Retry-After"]) > 0

        # Only the two accepted attempts reached the access log
        assert len(audit_store.access_events) == 2
        assert "produced no access record" in body["complianceNote"]

        # General tier still has headroom on the standard path
        assert (await limited_client.post(STANDARD, json=valid_body)).status_code == 200

    @pytest.mark.asyncio
    async def test_general_ceiling(self, limited_client, valid_body):
        for _ in range(5):
            await limited_client.post(STANDARD, json=valid_body)
        rejected = await limited_client.post(STANDARD, json=valid_body)
        assert rejected.status_code == 429
        assert rejected.json()["complianceNote"].startswith("General throttling")


# ---------------------------------------------------------------------------
# Compliance endpoints
# ---------------------------------------------------------------------------


class TestComplianceEndpoints:
    @pytest.mark.asyncio
    async def test_status_counts_elevated_access(self, client, valid_body):
        await client.post(ELEVATED, json=valid_body)
        denied = {**valid_body, "authorization": {"callerId": "tech-9", "authorized": False}}
        await client.post(ELEVATED, json=denied)

        response = await client.get("/api/compliance/status")

        assert response.status_code == 200
        body = response.json()
        assert body["accessAttempts"] == {"total": 2, "authorized": 1, "unauthorized": 1}
        assert body["complianceScore"] == 50.0

    @pytest.mark.asyncio
    async def test_status_empty_is_fully_compliant(self, client):
        body = (await client.get("/api/compliance/status")).json()
        assert body["complianceScore"] == 100.0
        assert body["accessAttempts"]["total"] == 0

    @pytest.mark.asyncio
    async def test_export_requires_token(self, client):
        response = await client.get(
            "/api/compliance/export", params={"startDate": "2026-01-01", "endDate": "2026-01-31"}
        )
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_export_rejects_bad_token(self, client):
        token = make_token(secret="some-other-secret")
        response = await client.get(
            "/api/compliance/export",
            params={"startDate": "2026-01-01", "endDate": "2026-01-31"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("start", "end"),
        [
            ("not-a-date", "2026-01-31"),
            ("2026-02-01", "2026-01-01"),
            ("2024-01-01", "2026-01-01"),
        ],
    )
    async def test_export_rejects_bad_period(self, client, start, end):
        response = await client.get(
            "/api/compliance/export",
            params={"startDate": start, "endDate": end},
            headers={"Authorization": f"Bearer {make_token()}"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_export_with_token(self, client, valid_body):
        await client.post(ELEVATED, json=valid_body)
        today = datetime.now(UTC).date()

        response = await client.get(
            "/api/compliance/export",
            params={
                "startDate": (today - timedelta(days=1)).isoformat(),
                "endDate": today.isoformat(),
            },
            headers={"Authorization": f"Bearer {make_token()}"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["accessAttempts"]["total"] == 1
        assert body["daily"][-1]["day"] == today.isoformat()
        assert "generatedAt" in body


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


class TestOperational:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["dependencies"] == {
            "database": "healthy",
            "cache": "healthy",
            "generation": "healthy",
            "auditQueue": "healthy",
        }
        assert "X-RateLimit-Limit" not in response.headers

    @pytest.mark.asyncio
    async def test_health_degraded_when_store_down(self, client, audit_store):
        async def down() -> bool:
            return False

        audit_store.ping = down
        body = (await client.get("/health")).json()
        assert body["status"] == "degraded"
        assert body["dependencies"]["database"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        assert (await client.get("/health/live")).json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_metrics(self, client, valid_body):
        await client.post(STANDARD, json=valid_body)
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "audit_events_total" in response.text
        assert 'route="/api/generate-documentation"' in response.text

    @pytest.mark.asyncio
    async def test_metrics_label_elevated_route_with_full_prefix(self, client, valid_body):
        await client.post(ELEVATED, json=valid_body)
        text = (await client.get("/metrics")).text
        assert 'route="/api/itar/generate-documentation"' in text

    @pytest.mark.asyncio
    async def test_unknown_paths_share_one_metric_series(self, client):
        await client.get("/no/such/path/1")
        await client.get("/no/such/path/2")
        text = (await client.get("/metrics")).text
        assert "/no/such/path" not in text
        assert 'route="unmatched"' in text


class TestRouteTemplate:
    """Route labels for both flattened and nested router layouts."""

    def test_flattened_route_uses_its_own_path(self):
        route = SimpleNamespace(path="/api/generate-documentation")
        assert route_template({"route": route, "root_path": ""}) == "/api/generate-documentation"

    def test_nested_route_gets_consumed_prefixes(self):
        route = SimpleNamespace(path="/generate-documentation")
        scope = {"route": route, "root_path": "/gw/api/itar", "app_root_path": "/gw"}
        assert route_template(scope) == "/api/itar/generate-documentation"

    def test_proxy_root_path_not_prepended(self):
        route = SimpleNamespace(path="/health")
        assert route_template({"route": route, "root_path": "/gw"}) == "/health"

    def test_no_route_is_unmatched(self):
        assert route_template({"root_path": ""}) == "unmatched"
