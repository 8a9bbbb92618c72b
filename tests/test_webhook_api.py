"""API tests: sync webhook, audit log, tenant administration and cache.

Services on app.state are the in-memory fakes from conftest; the lifespan
(which would connect to Postgres and Redis) is not run.
"""

from __future__ import annotations

import json

import pytest

from conftest import WEBHOOK_SECRET
from src.tenantsync.sync.signature import build_signature


def _signed(payload: dict) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    return body, {
        "content-type": "application/json",
        "x-webhook-signature": build_signature(body, WEBHOOK_SECRET),
    }


INSERT_EVENT = {
    "operation": "INSERT",
    "table": "quotes",
    "tenant_id": "T1",
    "data": {"id": 1, "tenant_id": "T1", "total": 100},
}


# ── Webhook ─────────────────────────────────────────────────────────────────


class TestWebhook:
    """POST /api/v1/sync/webhook end to end against the in-memory services."""

    @pytest.mark.asyncio
    async def test_signed_insert(self, client, services):
        """A signed insert is applied and answered without per-table results."""
        body, headers = _signed(INSERT_EVENT)
        response = await client.post("/api/v1/sync/webhook", content=body, headers=headers)
        await services.dispatcher.drain()

        assert response.status_code == 200
        data = response.json()
        assert data["received"] is True
        assert "duration_ms" in data
        assert "results" not in data
        assert services.store.rows("quotes")
        assert services.cache.invalidation_calls == [("T1", ["quotes"])]
        assert response.headers["x-request-id"]

    @pytest.mark.asyncio
    async def test_wrong_signature_is_rejected(self, client, services):
        """Rejected deliveries are audited without tenant or payload."""
        body, headers = _signed(INSERT_EVENT)
        headers["x-webhook-signature"] = build_signature(body, "not-the-secret")

        response = await client.post("/api/v1/sync/webhook", content=body, headers=headers)
        await services.dispatcher.drain()

        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_ERROR"
        assert services.store.writes == 0
        assert services.cache.invalidation_calls == []
        [audit] = services.webhook_logs.rows
        assert audit["success"] is False
        assert audit["error_message"] == "Invalid signature"
        assert audit["operation"] == "INSERT"
        assert audit.get("tenant_id") is None

    @pytest.mark.asyncio
    async def test_signature_over_different_bytes_is_rejected(self, client, services):
        """The HMAC covers the raw body, so re-serialised JSON fails."""
        _, headers = _signed(INSERT_EVENT)
        reformatted = json.dumps(INSERT_EVENT, indent=2).encode("utf-8")

        response = await client.post("/api/v1/sync/webhook", content=reformatted, headers=headers)

        assert response.status_code == 401
        assert services.store.writes == 0

    @pytest.mark.asyncio
    async def test_validation_error_is_400(self, client, services):
        """Missing tenant_id is a client error and is audited with the caller's IP."""
        body, headers = _signed({"operation": "INSERT", "table": "quotes", "data": {"id": 1}})
        response = await client.post("/api/v1/sync/webhook", content=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert services.webhook_logs.rows[-1]["success"] is False
        assert services.webhook_logs.rows[-1]["client_ip"]

    @pytest.mark.asyncio
    async def test_upsert_failure_is_500(self, client, services):
        services.store.fail_tables.add("quotes")
        body, headers = _signed(INSERT_EVENT)

        response = await client.post("/api/v1/sync/webhook", content=body, headers=headers)

        assert response.status_code == 500
        assert response.json()["code"] == "UPSERT_FAILURE"

    @pytest.mark.asyncio
    async def test_test_event(self, client):
        body, headers = _signed({"operation": "TEST"})
        response = await client.post("/api/v1/sync/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "test": True}

    @pytest.mark.asyncio
    async def test_unmapped_table(self, client):
        body, headers = _signed({**INSERT_EVENT, "table": "auth_sessions"})
        response = await client.post("/api/v1/sync/webhook", content=body, headers=headers)

        assert response.json() == {"received": True, "skipped": True}

    @pytest.mark.asyncio
    async def test_multi_table_results(self, client, services):
        body, headers = _signed({
            "operation": "MULTI_TABLE_SYNC",
            "tenant_id": "T1",
            "tables": {"quotes": {"data": [{"id": 1, "tenant_id": "T1"}]}},
        })
        response = await client.post("/api/v1/sync/webhook", content=body, headers=headers)
        await services.dispatcher.drain()

        results = response.json()["results"]
        assert results[0]["source_table"] == "quotes"
        assert results[0]["success"] is True


# ── Audit Log ───────────────────────────────────────────────────────────────


class TestWebhookLogs:
    """The admin-only audit log listing."""

    @pytest.mark.asyncio
    async def test_requires_admin_key(self, client):
        response = await client.get("/api/v1/sync/logs")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_admin_key(self, client):
        response = await client.get("/api/v1/sync/logs", headers={"X-Admin-Key": "guess"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_filters_by_status(self, client, services, admin_headers):
        for payload in (INSERT_EVENT, {"operation": "INSERT", "table": "quotes"}):
            body, headers = _signed(payload)
            await client.post("/api/v1/sync/webhook", content=body, headers=headers)
        await services.dispatcher.drain()

        response = await client.get("/api/v1/sync/logs?status=error", headers=admin_headers)

        assert response.status_code == 200
        page = response.json()
        assert page["total"] == 1
        assert page["logs"][0]["success"] is False

    @pytest.mark.asyncio
    async def test_rejects_unknown_status(self, client, admin_headers):
        response = await client.get("/api/v1/sync/logs?status=maybe", headers=admin_headers)
        assert response.status_code == 422


# ── Tenants ─────────────────────────────────────────────────────────────────


class TestTenantEndpoints:
    """Registration, column access, purge and reset."""

    @pytest.mark.asyncio
    async def test_register(self, client, services, admin_headers):
        response = await client.post(
            "/api/v1/tenants/T1/register",
            json={"display_name": "Acme Cleaning"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["short_name"] == "acme_cleaning"
        assert data["schema_name"] == "tenant_acme_cleaning"
        assert data["role_name"] == "tenant_acme_cleaning_role"
        assert "acme_cleaning" in services.registry.provisioned

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, client, admin_headers):
        first = await client.post("/api/v1/tenants/T1/register", json={"display_name": "Acme"}, headers=admin_headers)
        second = await client.post("/api/v1/tenants/T1/register", json={"display_name": "Other"}, headers=admin_headers)

        assert first.json()["short_name"] == second.json()["short_name"] == "acme"

    @pytest.mark.asyncio
    async def test_column_access(self, client, services, admin_headers):
        body, headers = _signed(INSERT_EVENT)
        await client.post("/api/v1/sync/webhook", content=body, headers=headers)
        await services.dispatcher.drain()

        response = await client.get("/api/v1/tenants/T1/column-access", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()[0]["table_name"] == "quotes"
        assert response.json()[0]["columns"] == ["id", "tenant_id", "total"]

    @pytest.mark.asyncio
    async def test_column_access_unknown_tenant(self, client, admin_headers):
        response = await client.get("/api/v1/tenants/nobody/column-access", headers=admin_headers)
        assert response.status_code == 404
        assert response.json()["code"] == "TENANT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_purge_defaults_to_dry_run(self, client, services, admin_headers):
        """DELETE without flags only reports what would be removed."""
        await services.registry.register_tenant("T1", "Acme")

        response = await client.delete("/api/v1/tenants/T1", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["dry_run"] is True
        assert response.json()["executed"] is False
        assert await services.registry.resolve_short_name("T1") == "acme"

    @pytest.mark.asyncio
    async def test_purge_without_confirm_is_400(self, client, services, admin_headers):
        await services.registry.register_tenant("T1", "Acme")

        response = await client.delete("/api/v1/tenants/T1?dry_run=false", headers=admin_headers)

        assert response.status_code == 400
        assert await services.registry.resolve_short_name("T1") == "acme"

    @pytest.mark.asyncio
    async def test_purge_confirmed(self, client, services, admin_headers):
        await services.registry.register_tenant("T1", "Acme")

        response = await client.delete("/api/v1/tenants/T1?dry_run=false&confirm=true", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["executed"] is True
        assert await services.registry.resolve_short_name("T1") is None

    @pytest.mark.asyncio
    async def test_reset(self, client, services, admin_headers):
        await services.registry.register_tenant("T1", "Acme")

        response = await client.post("/api/v1/tenants/T1/reset", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["tenant_id"] == "T1"
        assert await services.registry.resolve_short_name("T1") == "acme"

    @pytest.mark.asyncio
    async def test_admin_refused_when_key_unset(self, client, settings):
        """An unset admin key disables the admin surface, even for an empty header."""
        settings.ADMIN_API_KEY = ""
        response = await client.post("/api/v1/tenants/T1/reset", headers={"X-Admin-Key": ""})
        assert response.status_code == 401


# ── Cache & Health ──────────────────────────────────────────────────────────


class TestCacheEndpoint:
    """Manual cache invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_tables(self, client, services, admin_headers):
        services.cache.add(1, "T1", ["quotes"])
        services.cache.add(2, "T1", ["sites"])

        response = await client.post(
            "/api/v1/cache/invalidate",
            json={"tenant_id": "T1", "tables": ["quotes"]},
            headers=admin_headers,
        )

        assert response.json() == {"tenant_id": "T1", "invalidated": 1}

    @pytest.mark.asyncio
    async def test_invalidate_all(self, client, services, admin_headers):
        services.cache.add(1, "T1", ["quotes"])
        services.cache.add(2, "T1", ["sites"])

        response = await client.post("/api/v1/cache/invalidate", json={"tenant_id": "T1"}, headers=admin_headers)

        assert response.json()["invalidated"] == 2


class TestHealth:
    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client):
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert b"sync_events_total" in response.content
