# ledger.py - Update ledger & per-client state machine
#
#   (none) --deploy--> pending --check-in--> in_progress --report--> success | failed
#   failed + rollback_on_failure --> new pending entry back to from_version,
#   whose success is recorded as rolled_back
#
# All mutations of one client's row and ledger run inside client_guard(), which
# serialises them per client (process-local asyncio lock + SELECT ... FOR UPDATE)
# and commits before releasing. Different clients never contend.
import asyncio
import weakref
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import version_registry
from database import is_transient
from errors import NotFound, StorageUnavailable, UpdateInProgress
from logging_system import LogCategory, get_logger
from models import (
    Client, UpdateLog, UpdateStatus, NON_TERMINAL_STATUSES, utcnow,
)

logger = get_logger(LogCategory.LEDGER)

SINGLE_FLIGHT_INDEX = "uq_update_log_single_flight"

_client_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _lock_for(client_id: str) -> asyncio.Lock:
    lock = _client_locks.get(client_id)
    if lock is None:
        lock = asyncio.Lock()
        _client_locks[client_id] = lock
    return lock


def _is_single_flight_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    # PostgreSQL names the index; SQLite names the column
    return SINGLE_FLIGHT_INDEX in message or "update_logs.client_id" in message


@asynccontextmanager
async def client_guard(db: AsyncSession, client_id: str) -> AsyncIterator[Client]:
    """Per-client critical section. Yields the freshly locked client row.

    Commits on clean exit; rolls back on any error so the ledger never keeps a
    half-applied transition.
    """
    async with _lock_for(client_id):
        try:
            stmt = (
                select(Client)
                .where(Client.id == client_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            result = await db.execute(stmt)
            client = result.scalar_one_or_none()
            if client is None:
                raise NotFound("Client not found")
            yield client
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            if _is_single_flight_violation(exc):
                logger.warning(f"Single-flight index rejected a second live entry for client {client_id}")
                raise UpdateInProgress("Client already has an update in flight") from exc
            raise
        except DBAPIError as exc:
            await db.rollback()
            if is_transient(exc):
                logger.error(f"Transient storage error in client {client_id} transaction: {exc}")
                raise StorageUnavailable("Storage temporarily unavailable, retry the request") from exc
            raise
        except Exception:
            await db.rollback()
            raise


# ============================================================
# QUERIES
# ============================================================

async def get_entry(db: AsyncSession, entry_id: str) -> Optional[UpdateLog]:
    stmt = (
        select(UpdateLog)
        .where(UpdateLog.id == entry_id)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def active_entry(db: AsyncSession, client_id: str) -> Optional[UpdateLog]:
    """The client's single pending/in_progress entry, if any."""
    stmt = (
        select(UpdateLog)
        .where(UpdateLog.client_id == client_id, UpdateLog.status.in_(NON_TERMINAL_STATUSES))
        .order_by(UpdateLog.started_at.desc())
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def latest_terminal_for_version(db: AsyncSession, client_id: str, version: str) -> Optional[UpdateLog]:
    stmt = (
        select(UpdateLog)
        .where(
            UpdateLog.client_id == client_id,
            UpdateLog.to_version == version,
            UpdateLog.status.not_in(NON_TERMINAL_STATUSES),
        )
        .order_by(UpdateLog.completed_at.desc(), UpdateLog.started_at.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def ledger_facts(db: AsyncSession, client_ids: Sequence[str]) -> Dict[str, Dict[str, Optional[UpdateLog]]]:
    """For each client: its live entry and its most recent terminal entry."""
    facts: Dict[str, Dict[str, Optional[UpdateLog]]] = {
        cid: {"active": None, "last_terminal": None} for cid in client_ids
    }
    if not client_ids:
        return facts

    active_stmt = select(UpdateLog).where(
        UpdateLog.client_id.in_(client_ids),
        UpdateLog.status.in_(NON_TERMINAL_STATUSES),
    )
    for entry in (await db.execute(active_stmt)).scalars():
        facts[entry.client_id]["active"] = entry

    # One row per client: rank terminal entries newest first and keep rank 1
    ranked = (
        select(
            UpdateLog.id.label("id"),
            func.row_number()
            .over(
                partition_by=UpdateLog.client_id,
                order_by=(UpdateLog.completed_at.desc(), UpdateLog.started_at.desc()),
            )
            .label("recency"),
        )
        .where(
            UpdateLog.client_id.in_(client_ids),
            UpdateLog.status.not_in(NON_TERMINAL_STATUSES),
        )
        .subquery()
    )
    terminal_stmt = (
        select(UpdateLog)
        .join(ranked, UpdateLog.id == ranked.c.id)
        .where(ranked.c.recency == 1)
    )
    for entry in (await db.execute(terminal_stmt)).scalars():
        facts[entry.client_id]["last_terminal"] = entry
    return facts


async def history(
    db: AsyncSession,
    client_id: Optional[str] = None,
    status: Optional[UpdateStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[UpdateLog]:
    stmt = select(UpdateLog)
    if client_id:
        stmt = stmt.where(UpdateLog.client_id == client_id)
    if status:
        stmt = stmt.where(UpdateLog.status == status)
    stmt = stmt.order_by(UpdateLog.started_at.desc()).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ============================================================
# TRANSITIONS (call inside client_guard)
# ============================================================

async def open_entry(
    db: AsyncSession,
    client: Client,
    to_version: str,
    rollback_of: Optional[UpdateLog] = None,
) -> UpdateLog:
    """Create the client's pending entry; refuses if one is already live."""
    await db.flush()
    existing = await active_entry(db, client.id)
    if existing is not None:
        raise UpdateInProgress(
            f"Client already has a {existing.status.value} update to {existing.to_version}",
            update_id=existing.id,
        )

    entry = UpdateLog(
        client_id=client.id,
        from_version=client.current_version,
        to_version=to_version,
        status=UpdateStatus.PENDING,
        is_rollback=rollback_of is not None,
        rollback_of_id=rollback_of.id if rollback_of is not None else None,
        started_at=utcnow(),
    )
    db.add(entry)
    client.target_version = to_version
    await db.flush()
    logger.info(
        f"Opened {'rollback' if entry.is_rollback else 'update'} {entry.id} for client {client.id}: "
        f"{entry.from_version or '-'} -> {to_version}"
    )
    return entry


def hand_out(entry: UpdateLog, now: Optional[datetime] = None) -> bool:
    """pending -> in_progress. Returns False when already handed out."""
    if entry.status != UpdateStatus.PENDING:
        return False
    entry.status = UpdateStatus.IN_PROGRESS
    entry.handed_out_at = now or utcnow()
    logger.info(f"Handed out update {entry.id} ({entry.to_version}) to client {entry.client_id}")
    return True


def complete_success(client: Client, entry: UpdateLog, now: Optional[datetime] = None) -> UpdateLog:
    now = now or utcnow()
    entry.status = UpdateStatus.ROLLED_BACK if entry.is_rollback else UpdateStatus.SUCCESS
    entry.completed_at = now
    client.current_version = entry.to_version
    client.target_version = entry.to_version
    client.last_healthy_at = now
    logger.info(f"Update {entry.id} for client {client.id} finished: {entry.status.value}")
    return entry


async def complete_failure(
    db: AsyncSession,
    client: Client,
    entry: UpdateLog,
    error_message: Optional[str] = None,
    rollback_on_failure: bool = False,
    now: Optional[datetime] = None,
) -> Optional[UpdateLog]:
    """in_progress -> failed, then apply rollback policy. Returns the rollback entry if opened."""
    now = now or utcnow()
    entry.status = UpdateStatus.FAILED
    entry.error_message = (error_message or "")[:4000] or None
    entry.completed_at = now
    logger.warning(f"Update {entry.id} for client {client.id} failed: {entry.error_message or 'no detail'}")

    # Cleared unless a rollback entry below sets it again
    client.target_version = None
    await db.flush()

    if not rollback_on_failure:
        return None
    if entry.is_rollback:
        logger.error(f"Rollback {entry.id} for client {client.id} failed; not chaining another rollback")
        return None
    restore = await version_registry.find(db, entry.from_version) if entry.from_version else None
    if restore is None:
        logger.warning(
            f"Cannot roll back client {client.id}: previous version {entry.from_version!r} is not registered"
        )
        return None
    return await open_entry(db, client, restore.version, rollback_of=entry)


async def terminate(
    db: AsyncSession, client: Client, entry: UpdateLog, reason: str, now: Optional[datetime] = None
) -> UpdateLog:
    """Administrative abandonment (supersede/cancel): recorded as failed, never rolled back."""
    entry.status = UpdateStatus.FAILED
    entry.error_message = reason[:4000]
    entry.completed_at = now or utcnow()
    await db.flush()
    logger.info(f"Update {entry.id} for client {client.id} terminated: {reason}")
    return entry
