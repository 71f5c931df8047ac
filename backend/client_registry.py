# client_registry.py - Managed hosts: identity, credentials, reported state
# Bearer secrets are generated from a CSPRNG, shown once, and stored only as a
# SHA-256 digest plus a short lookup prefix. Status is derived on read.
import hashlib
import hmac
import os
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

import audit_trail
import ledger
import version_registry
from database import commit_mutation
from errors import ClientHasHistory, NotFound, Unauthorized, UpdateInProgress
from logging_system import log_security
from models import (
    AuditEventType, Client, ClientStatus, UpdateLog, UpdateStatus, as_utc, utcnow,
)

OFFLINE_THRESHOLD_SECONDS = int(os.getenv("OFFLINE_THRESHOLD_SECONDS", "300"))
CLIENT_SECRET_PREFIX = "dmc_"
LOOKUP_PREFIX_LENGTH = 12


class ClientConfig(BaseModel):
    """Per-client update settings, interpreted by the client agent."""
    model_config = ConfigDict(extra="allow")

    service_dir: Optional[str] = None
    restart_command: Optional[str] = None
    pre_update_script: Optional[str] = None
    post_update_script: Optional[str] = None
    health_check_url: Optional[str] = None
    health_check_timeout: Optional[int] = Field(default=None, ge=1, le=3600)
    rollback_on_failure: Optional[bool] = None


# ============================================================
# CREDENTIALS
# ============================================================

def generate_secret() -> Tuple[str, str, str]:
    """Returns (raw_secret, secret_hash, lookup_prefix)"""
    raw = f"{CLIENT_SECRET_PREFIX}{secrets.token_urlsafe(32)}"
    return raw, hash_secret(raw), raw[:LOOKUP_PREFIX_LENGTH]


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


async def authenticate(db: AsyncSession, secret: Optional[str]) -> Client:
    if not secret:
        raise Unauthorized("Client credential required")
    digest = hash_secret(secret)
    stmt = select(Client).where(Client.key_prefix == secret[:LOOKUP_PREFIX_LENGTH])
    candidates = (await db.execute(stmt)).scalars().all()

    matched = None
    for candidate in candidates:
        # Compare every candidate so timing does not depend on which one matched
        if hmac.compare_digest(candidate.key_hash, digest):
            matched = candidate
    if matched is None:
        log_security("client.auth_failed", prefix=secret[:6])
        raise Unauthorized("Invalid client credential")
    return matched


# ============================================================
# REGISTRATION & LOOKUP
# ============================================================

async def register(
    db: AsyncSession,
    name: str,
    config: Optional[ClientConfig] = None,
    actor: Optional[str] = None,
) -> Tuple[Client, str]:
    """Create a client. The raw secret is returned here and nowhere else."""
    raw, key_hash, prefix = generate_secret()
    client = Client(
        name=name,
        key_hash=key_hash,
        key_prefix=prefix,
        config=config.model_dump(exclude_none=True) if config else {},
    )
    db.add(client)
    await db.flush()
    await audit_trail.record(
        db,
        AuditEventType.CLIENT_REGISTERED,
        actor=actor,
        resource_type="client",
        resource_id=client.id,
        name=name,
    )
    await commit_mutation(db)
    await db.refresh(client)
    return client, raw


async def get(db: AsyncSession, client_id: str) -> Client:
    client = await db.get(Client, client_id)
    if client is None:
        raise NotFound("Client not found")
    return client


async def list_clients(db: AsyncSession) -> List[Client]:
    stmt = select(Client).order_by(Client.created_at.desc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ============================================================
# STATE (call inside ledger.client_guard)
# ============================================================

async def set_target(db: AsyncSession, client: Client, version_string: str):
    """Validate and set a new target; the caller opens the ledger entry."""
    version = await version_registry.get_active(db, version_string)
    existing = await ledger.active_entry(db, client.id)
    if existing is not None:
        raise UpdateInProgress(
            f"Client already has a {existing.status.value} update to {existing.to_version}",
            update_id=existing.id,
        )
    client.target_version = version.version
    return version


def record_checkin(
    client: Client,
    reported_version: Optional[str],
    reported_status: Optional[str],
    now: Optional[datetime] = None,
) -> None:
    now = now or utcnow()
    if reported_version:
        client.current_version = reported_version
    client.last_seen = now
    client.reported_status = reported_status
    if (reported_status or "").lower() != ClientStatus.ERROR.value:
        client.last_healthy_at = now


def rollback_enabled(client: Client) -> bool:
    return bool((client.config or {}).get("rollback_on_failure"))


async def update_config(db: AsyncSession, client_id: str, config: ClientConfig, actor: Optional[str] = None) -> Client:
    async with ledger.client_guard(db, client_id) as client:
        client.config = config.model_dump(exclude_none=True)
        await audit_trail.record(
            db,
            AuditEventType.CLIENT_CONFIG_UPDATED,
            actor=actor,
            resource_type="client",
            resource_id=client_id,
        )
    await db.refresh(client)
    return client


async def delete_client(db: AsyncSession, client_id: str, cascade: bool = False, actor: Optional[str] = None) -> int:
    """Explicit administrative removal. Returns the number of ledger entries removed."""
    async with ledger.client_guard(db, client_id) as client:
        count_stmt = select(func.count()).select_from(UpdateLog).where(UpdateLog.client_id == client_id)
        entries = (await db.execute(count_stmt)).scalar_one()
        if entries and not cascade:
            raise ClientHasHistory(
                "Client has update history; pass cascade=true to delete it together with its ledger",
                entries=entries,
            )
        await db.execute(delete(UpdateLog).where(UpdateLog.client_id == client_id))
        await db.delete(client)
        await audit_trail.record(
            db,
            AuditEventType.CLIENT_DELETED,
            actor=actor,
            resource_type="client",
            resource_id=client_id,
            ledger_entries=entries,
        )
    return entries


# ============================================================
# DERIVED STATUS
# ============================================================

def derive_status(
    client: Client,
    active: Optional[UpdateLog],
    last_terminal: Optional[UpdateLog],
    now: Optional[datetime] = None,
    threshold_seconds: Optional[int] = None,
) -> ClientStatus:
    """offline > updating > error > online, computed from stored facts only."""
    now = now or utcnow()
    threshold = OFFLINE_THRESHOLD_SECONDS if threshold_seconds is None else threshold_seconds

    last_seen = as_utc(client.last_seen)
    if last_seen is None or (now - last_seen).total_seconds() > threshold:
        return ClientStatus.OFFLINE
    if active is not None:
        return ClientStatus.UPDATING
    if last_terminal is not None and last_terminal.status == UpdateStatus.FAILED:
        failed_at = as_utc(last_terminal.completed_at)
        healthy_at = as_utc(client.last_healthy_at)
        if failed_at is None or healthy_at is None or healthy_at <= failed_at:
            return ClientStatus.ERROR
    return ClientStatus.ONLINE


def describe(
    client: Client,
    active: Optional[UpdateLog] = None,
    last_terminal: Optional[UpdateLog] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    last_seen = as_utc(client.last_seen)
    created_at = as_utc(client.created_at)
    return {
        "id": client.id,
        "name": client.name,
        "current_version": client.current_version,
        "target_version": client.target_version,
        "status": derive_status(client, active, last_terminal, now=now).value,
        "reported_status": client.reported_status,
        "last_seen": last_seen.isoformat() if last_seen else None,
        "active_update_id": active.id if active is not None else None,
        "config": client.config or {},
        "created_at": created_at.isoformat() if created_at else "",
    }


async def describe_many(db: AsyncSession, clients: List[Client]) -> List[Dict[str, Any]]:
    facts = await ledger.ledger_facts(db, [c.id for c in clients])
    now = utcnow()
    return [
        describe(c, facts[c.id]["active"], facts[c.id]["last_terminal"], now=now)
        for c in clients
    ]
