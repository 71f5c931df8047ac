# tests/test_artifacts.py - Artifact store and download
import hashlib
import io
from pathlib import Path

import pytest
from fastapi import UploadFile
from httpx import AsyncClient

import artifact_store
from errors import IntegrityMismatch, NotFound
from tests.conftest import artifact_bytes, client_headers, upload_version


@pytest.mark.asyncio
class TestDownload:
    async def test_client_downloads_artifact(self, client: AsyncClient, registered_client, two_versions):
        res = await client.get("/api/v1/artifacts/1.1.0", headers=client_headers(registered_client["api_key"]))
        assert res.status_code == 200
        assert res.content == artifact_bytes("1.1.0")
        assert res.headers["X-Checksum-SHA256"] == hashlib.sha256(artifact_bytes("1.1.0")).hexdigest()
        assert res.headers["Content-Length"] == str(len(artifact_bytes("1.1.0")))
        assert "agent-1.1.0.tar.gz" in res.headers["Content-Disposition"]

    async def test_viewer_downloads_artifact(self, client: AsyncClient, two_versions, viewer_headers):
        res = await client.get("/api/v1/artifacts/1.0.0", headers=viewer_headers)
        assert res.status_code == 200

    async def test_x_api_key_download(self, client: AsyncClient, registered_client, two_versions):
        res = await client.get("/api/v1/artifacts/1.0.0", headers={"X-API-Key": registered_client["api_key"]})
        assert res.status_code == 200

    async def test_anonymous_download_refused(self, client: AsyncClient, two_versions):
        res = await client.get("/api/v1/artifacts/1.0.0")
        assert res.status_code == 401

    async def test_unknown_version(self, client: AsyncClient, registered_client):
        res = await client.get("/api/v1/artifacts/4.0.0", headers=client_headers(registered_client["api_key"]))
        assert res.status_code == 404

    async def test_identical_content_shares_blob(self, client: AsyncClient, admin_headers):
        first = await upload_version(client, admin_headers, "1.0.0", content=b"same bytes")
        second = await upload_version(client, admin_headers, "1.0.1", content=b"same bytes")
        assert first["checksum"] == second["checksum"]


@pytest.mark.asyncio
class TestStore:
    async def test_store_upload_is_content_addressed(self):
        content = b"abc" * 1000
        stored = await artifact_store.store_upload(UploadFile(io.BytesIO(content), filename="a.bin"))
        digest = hashlib.sha256(content).hexdigest()
        assert stored.ref == f"{digest[:2]}/{digest}"
        assert stored.size == len(content)
        assert artifact_store.resolve(stored.ref).read_bytes() == content

    async def test_mismatch_leaves_nothing_behind(self):
        content = b"unique content for mismatch test"
        with pytest.raises(IntegrityMismatch):
            await artifact_store.store_upload(
                UploadFile(io.BytesIO(content), filename="b.bin"), declared_checksum="f" * 64
            )
        digest = hashlib.sha256(content).hexdigest()
        with pytest.raises(NotFound):
            artifact_store.resolve(f"{digest[:2]}/{digest}")
        assert list((Path(artifact_store.ARTIFACT_STORAGE_ROOT) / "tmp").iterdir()) == []

    async def test_chunk_writes_run_in_threadpool(self, monkeypatch):
        calls = []
        original = artifact_store.run_in_threadpool

        async def recording(func, *args, **kwargs):
            calls.append(getattr(func, "__name__", repr(func)))
            return await original(func, *args, **kwargs)

        monkeypatch.setattr(artifact_store, "run_in_threadpool", recording)
        content = b"x" * (artifact_store.CHUNK_SIZE + 10)
        stored = await artifact_store.store_upload(UploadFile(io.BytesIO(content), filename="big.bin"))
        assert stored.size == len(content)
        assert calls.count("write") == 2
        assert "close" in calls


def test_resolve_refuses_traversal():
    with pytest.raises(NotFound):
        artifact_store.resolve("../../etc/passwd")
