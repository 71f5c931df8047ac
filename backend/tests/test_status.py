# tests/test_status.py - Derived client status
from datetime import timedelta

import pytest
from httpx import AsyncClient

from client_registry import derive_status
from models import Client, ClientStatus, UpdateLog, UpdateStatus, utcnow
from tests.conftest import check_in, report


def _client(seen_ago=None, healthy_ago=None):
    now = utcnow()
    return Client(
        name="unit",
        key_hash="x" * 64,
        key_prefix="dmc_xxxxxxxx",
        last_seen=now - seen_ago if seen_ago is not None else None,
        last_healthy_at=now - healthy_ago if healthy_ago is not None else None,
    )


def _entry(status, completed_ago=None):
    return UpdateLog(
        client_id="c",
        to_version="1.0.0",
        status=status,
        completed_at=utcnow() - completed_ago if completed_ago is not None else None,
    )


class TestDeriveStatus:
    def test_never_seen_is_offline(self):
        assert derive_status(_client(), None, None) == ClientStatus.OFFLINE

    def test_stale_heartbeat_is_offline(self):
        c = _client(seen_ago=timedelta(seconds=301))
        assert derive_status(c, None, None, threshold_seconds=300) == ClientStatus.OFFLINE

    def test_offline_wins_over_updating(self):
        c = _client(seen_ago=timedelta(hours=1))
        assert derive_status(c, _entry(UpdateStatus.IN_PROGRESS), None) == ClientStatus.OFFLINE

    def test_live_entry_is_updating(self):
        c = _client(seen_ago=timedelta(seconds=5))
        assert derive_status(c, _entry(UpdateStatus.PENDING), None) == ClientStatus.UPDATING

    def test_recent_failure_is_error(self):
        c = _client(seen_ago=timedelta(seconds=5), healthy_ago=timedelta(seconds=60))
        failed = _entry(UpdateStatus.FAILED, completed_ago=timedelta(seconds=30))
        assert derive_status(c, None, failed) == ClientStatus.ERROR

    def test_healthy_checkin_clears_error(self):
        c = _client(seen_ago=timedelta(seconds=5), healthy_ago=timedelta(seconds=5))
        failed = _entry(UpdateStatus.FAILED, completed_ago=timedelta(seconds=30))
        assert derive_status(c, None, failed) == ClientStatus.ONLINE

    def test_success_is_online(self):
        c = _client(seen_ago=timedelta(seconds=5))
        assert derive_status(c, None, _entry(UpdateStatus.SUCCESS, timedelta(seconds=1))) == ClientStatus.ONLINE

    @pytest.mark.parametrize("threshold, expected", [(10, ClientStatus.OFFLINE), (60, ClientStatus.ONLINE)])
    def test_threshold_is_configurable(self, threshold, expected):
        c = _client(seen_ago=timedelta(seconds=30))
        assert derive_status(c, None, None, threshold_seconds=threshold) == expected


@pytest.mark.asyncio
async def test_error_status_checkin_keeps_error(client: AsyncClient, registered_client, two_versions, operator_headers):
    cid = registered_client["id"]
    await check_in(client, registered_client["api_key"], "1.0.0")
    await client.post(f"/api/v1/clients/{cid}/deploy", json={"version": "1.1.0"}, headers=operator_headers)
    await check_in(client, registered_client["api_key"], "1.0.0")
    await report(client, registered_client["api_key"], success=False, version="1.1.0")

    await check_in(client, registered_client["api_key"], "1.0.0", status="error")
    described = (await client.get(f"/api/v1/clients/{cid}", headers=operator_headers)).json()
    assert described["status"] == "error"
    assert described["reported_status"] == "error"


@pytest.mark.asyncio
async def test_stale_client_reads_offline(client: AsyncClient, registered_client, viewer_headers, db_session):
    await check_in(client, registered_client["api_key"], "1.0.0")
    stored = await db_session.get(Client, registered_client["id"])
    stored.last_seen = utcnow() - timedelta(days=1)
    await db_session.commit()

    described = (await client.get(f"/api/v1/clients/{registered_client['id']}", headers=viewer_headers)).json()
    assert described["status"] == "offline"
