# tests/conftest.py - Shared test fixtures
import os
import hashlib
import tempfile
from typing import Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("ARTIFACT_STORAGE_ROOT", tempfile.mkdtemp(prefix="fleet-deploy-artifacts-"))

from models import Base
from auth import AdminRole, AuthService
from database import build_engine, get_db_session
from main import app


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = build_engine(TEST_DB_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependency"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return get_auth_headers(AdminRole.ADMIN, "root")


@pytest.fixture
def operator_headers():
    return get_auth_headers(AdminRole.OPERATOR, "ops")


@pytest.fixture
def viewer_headers():
    return get_auth_headers(AdminRole.VIEWER, "watcher")


@pytest_asyncio.fixture
async def registered_client(client: AsyncClient, admin_headers):
    """A fresh host; the response body includes its one-time api_key"""
    return await register_host(client, admin_headers, "edge-01")


@pytest_asyncio.fixture
async def two_versions(client: AsyncClient, admin_headers):
    v1 = await upload_version(client, admin_headers, "1.0.0")
    v2 = await upload_version(client, admin_headers, "1.1.0")
    return v1, v2


def get_auth_headers(role: AdminRole, subject: str = "tester") -> dict:
    """Generate operator auth headers"""
    token = AuthService.create_access_token(subject, role)
    return {"Authorization": f"Bearer {token}"}


def client_headers(api_key: str) -> dict:
    return {"Authorization": f"Bearer {api_key}"}


def artifact_bytes(version: str) -> bytes:
    return f"release {version}\n".encode() * 64


async def upload_version(
    client: AsyncClient,
    headers: dict,
    version: str,
    content: Optional[bytes] = None,
    **form,
) -> dict:
    content = artifact_bytes(version) if content is None else content
    res = await client.post(
        "/api/v1/versions",
        data={"version": version, **{k: str(v) for k, v in form.items()}},
        files={"artifact": (f"agent-{version}.tar.gz", content, "application/gzip")},
        headers=headers,
    )
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["checksum"] == hashlib.sha256(content).hexdigest()
    return body


async def register_host(client: AsyncClient, headers: dict, name: str, config: Optional[dict] = None) -> dict:
    payload = {"name": name}
    if config is not None:
        payload["config"] = config
    res = await client.post("/api/v1/clients", json=payload, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


async def check_in(client: AsyncClient, api_key: str, version: Optional[str], status: str = "running") -> dict:
    res = await client.post(
        "/api/v1/checkin",
        json={"current_version": version, "status": status},
        headers=client_headers(api_key),
    )
    assert res.status_code == 200, res.text
    return res.json()


async def report(client: AsyncClient, api_key: str, **body):
    return await client.post("/api/v1/update-result", json=body, headers=client_headers(api_key))
