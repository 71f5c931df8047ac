# tests/test_audit.py - Audit trail and error surface
import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

import client_registry
import version_registry
from tests.conftest import check_in, client_headers, register_host, upload_version


@pytest.mark.asyncio
class TestAuditTrail:
    async def test_administrative_actions_are_recorded(self, client: AsyncClient, admin_headers, operator_headers):
        await upload_version(client, admin_headers, "1.0.0")
        host = await register_host(client, admin_headers, "edge-audit")
        await client.post(f"/api/v1/clients/{host['id']}/deploy", json={"version": "1.0.0"}, headers=operator_headers)

        res = await client.get("/api/v1/audit", headers=admin_headers)
        assert res.status_code == 200
        events = res.json()
        assert [e["event_type"] for e in events] == ["deploy.issued", "client.registered", "version.registered"]
        deploy = events[0]
        assert deploy["actor"] == "ops"
        assert deploy["resource_id"] == host["id"]
        assert deploy["details"]["to_version"] == "1.0.0"
        assert deploy["request_id"]

    async def test_filter_by_resource(self, client: AsyncClient, admin_headers):
        await upload_version(client, admin_headers, "1.0.0")
        await client.post("/api/v1/versions/1.0.0/retire", headers=admin_headers)
        res = await client.get("/api/v1/audit?resource_id=1.0.0&event_type=version.retired", headers=admin_headers)
        assert [e["event_type"] for e in res.json()] == ["version.retired"]

    async def test_refused_deploy_is_not_recorded(self, client: AsyncClient, admin_headers):
        host = await register_host(client, admin_headers, "edge-refused")
        res = await client.post(f"/api/v1/clients/{host['id']}/deploy", json={"version": "9.9.9"}, headers=admin_headers)
        assert res.status_code == 404
        events = (await client.get("/api/v1/audit?event_type=deploy.issued", headers=admin_headers)).json()
        assert events == []


@pytest.mark.asyncio
class TestStorageErrors:
    async def test_transient_read_failure_is_retried(self, client: AsyncClient, admin_headers, monkeypatch):
        await upload_version(client, admin_headers, "1.0.0")
        real = version_registry.list_versions
        calls = {"n": 0}

        async def flaky(db, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("SELECT", {}, Exception("connection reset"))
            return await real(db, *args, **kwargs)

        monkeypatch.setattr(version_registry, "list_versions", flaky)
        res = await client.get("/api/v1/versions", headers=admin_headers)
        assert res.status_code == 200
        assert calls["n"] == 2

    async def test_persistent_failure_is_retryable_503(self, client: AsyncClient, admin_headers, monkeypatch):
        async def down(db, *args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("server closed the connection"))

        monkeypatch.setattr(version_registry, "list_versions", down)
        res = await client.get("/api/v1/versions", headers=admin_headers)
        assert res.status_code == 503
        assert res.headers["Retry-After"] == "1"
        body = res.json()
        assert body["code"] == "STORAGE_UNAVAILABLE"
        assert body["retryable"] is True


@pytest.mark.asyncio
async def test_root_and_health(client: AsyncClient):
    res = await client.get("/")
    assert res.json()["name"] == "fleet-deploy"
    health = await client.get("/health")
    assert health.status_code == 200
    assert "database" in health.json()


@pytest.mark.asyncio
class TestClientAuthStorageErrors:
    async def test_transient_credential_lookup_is_retried(self, client: AsyncClient, registered_client, monkeypatch):
        real = client_registry.authenticate
        calls = {"n": 0}

        async def flaky(db, secret):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("SELECT", {}, Exception("connection reset"))
            return await real(db, secret)

        monkeypatch.setattr(client_registry, "authenticate", flaky)
        assert await check_in(client, registered_client["api_key"], "1.0.0") == {"action": "none"}
        assert calls["n"] == 2

    async def test_credential_lookup_outage_is_retryable_503(self, client: AsyncClient, registered_client, monkeypatch):
        async def down(db, secret):
            raise OperationalError("SELECT", {}, Exception("server closed the connection"))

        monkeypatch.setattr(client_registry, "authenticate", down)
        res = await client.post(
            "/api/v1/checkin",
            json={"current_version": "1.0.0"},
            headers=client_headers(registered_client["api_key"]),
        )
        assert res.status_code == 503
        assert res.headers["Retry-After"] == "1"
        assert res.json()["code"] == "STORAGE_UNAVAILABLE"
