# tests/test_auth.py - Authentication & authorization tests
from datetime import timedelta

import pytest
from httpx import AsyncClient

from auth import AdminRole, AuthService
from client_registry import generate_secret, hash_secret
from tests.conftest import client_headers, get_auth_headers


class TestTokens:
    def test_round_trip_claims(self):
        token = AuthService.create_access_token("alice", AdminRole.OPERATOR)
        admin = AuthService.admin_from_token(token)
        assert admin.subject == "alice"
        assert admin.role == "operator"

    def test_secret_format(self):
        raw, digest, prefix = generate_secret()
        assert raw.startswith("dmc_")
        assert digest == hash_secret(raw)
        assert raw.startswith(prefix)
        assert len(prefix) == 12


@pytest.mark.asyncio
class TestOperatorAuth:
    async def test_missing_token(self, client: AsyncClient):
        res = await client.get("/api/v1/clients")
        assert res.status_code == 401
        body = res.json()
        assert body["code"] == "UNAUTHORIZED"
        assert body["request_id"] == res.headers["X-Request-ID"]

    async def test_garbage_token(self, client: AsyncClient):
        res = await client.get("/api/v1/clients", headers={"Authorization": "Bearer not.a.jwt"})
        assert res.status_code == 401

    async def test_expired_token(self, client: AsyncClient):
        token = AuthService.create_access_token("old", AdminRole.ADMIN, expires_delta=timedelta(seconds=-5))
        res = await client.get("/api/v1/clients", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401
        assert res.json()["detail"] == "Token expired"

    @pytest.mark.parametrize("role, expected", [
        (AdminRole.VIEWER, 403),
        (AdminRole.OPERATOR, 403),
        (AdminRole.ADMIN, 200),
    ])
    async def test_audit_requires_admin(self, client: AsyncClient, role, expected):
        res = await client.get("/api/v1/audit", headers=get_auth_headers(role))
        assert res.status_code == expected

    async def test_client_secret_is_not_an_operator_token(self, client: AsyncClient, registered_client):
        res = await client.get("/api/v1/clients", headers=client_headers(registered_client["api_key"]))
        assert res.status_code == 401


@pytest.mark.asyncio
class TestClientAuth:
    async def test_operator_token_cannot_check_in(self, client: AsyncClient, admin_headers):
        res = await client.post("/api/v1/checkin", json={"current_version": "1.0.0"}, headers=admin_headers)
        assert res.status_code == 401

    async def test_missing_client_secret(self, client: AsyncClient):
        res = await client.post("/api/v1/update-result", json={"success": True})
        assert res.status_code == 401
        assert res.json()["code"] == "UNAUTHORIZED"

    async def test_correlation_ids_round_trip(self, client: AsyncClient, registered_client):
        res = await client.post(
            "/api/v1/checkin",
            json={"current_version": "1.0.0"},
            headers={**client_headers(registered_client["api_key"]), "X-Request-ID": "req-123", "X-Correlation-ID": "corr-9"},
        )
        assert res.status_code == 200
        assert res.headers["X-Request-ID"] == "req-123"
        assert res.headers["X-Correlation-ID"] == "corr-9"
        assert res.headers["X-Response-Time"].endswith("s")
        assert float(res.headers["X-Response-Time"][:-1]) >= 0
        assert res.headers["X-Content-Type-Options"] == "nosniff"
