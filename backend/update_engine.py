# update_engine.py - Deploy issuer, check-in handler, result reporter
#
# Every operation runs inside ledger.client_guard() so that, for one client,
# the hand-out happens at most once and at most one entry is ever live, even
# when a retried check-in races a result report.
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

import audit_trail
import client_registry
import ledger
import version_registry
from errors import ConflictingReport, NoActiveUpdate, NotFound
from logging_system import LogCategory, get_logger
from models import (
    AuditEventType, Client, UpdateLog, UpdateStatus, Version, SUCCESS_STATUSES, utcnow,
)

logger = get_logger(LogCategory.CHECKIN)

ARTIFACT_URL_TEMPLATE = "/api/v1/artifacts/{version}"


@dataclass
class CheckinResult:
    action: str  # "none" | "update"
    entry: Optional[UpdateLog] = None
    version: Optional[Version] = None
    config: Optional[Dict[str, Any]] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"action": self.action}
        if self.action == "update":
            body.update({
                "update_id": self.entry.id,
                "target_version": self.version.version,
                "artifact_url": ARTIFACT_URL_TEMPLATE.format(version=self.version.version),
                "checksum": self.version.checksum,
                "artifact_size": self.version.artifact_size,
                "is_rollback": bool(self.entry.is_rollback),
            })
        if self.config:
            body["config"] = self.config
        return body


@dataclass
class ReportResult:
    entry: UpdateLog
    duplicate: bool = False
    rollback_entry: Optional[UpdateLog] = None


def _agent_config(client: Client) -> Optional[Dict[str, Any]]:
    """Config is echoed only once the client has something to act on."""
    config = client.config or {}
    if config.get("service_dir") or config.get("restart_command"):
        return dict(config)
    return None


# ============================================================
# DEPLOY ISSUER
# ============================================================

async def deploy(db: AsyncSession, client_id: str, version_string: str, actor: Optional[str] = None) -> UpdateLog:
    """Set the client's target and open a pending entry. Fails with UpdateInProgress if one is live."""
    async with ledger.client_guard(db, client_id) as client:
        version = await client_registry.set_target(db, client, version_string)
        entry = await ledger.open_entry(db, client, version.version)
        await audit_trail.record(
            db,
            AuditEventType.DEPLOY_ISSUED,
            actor=actor,
            resource_type="client",
            resource_id=client.id,
            update_id=entry.id,
            from_version=entry.from_version,
            to_version=entry.to_version,
        )
    return entry


async def supersede(
    db: AsyncSession,
    client_id: str,
    version_string: str,
    reason: str = "",
    actor: Optional[str] = None,
) -> Tuple[UpdateLog, Optional[UpdateLog]]:
    """Replace a live entry: the stale one is failed with a cancellation reason, then a new one opens.

    Returns (new_entry, superseded_entry).
    """
    async with ledger.client_guard(db, client_id) as client:
        # Validate before touching the stale entry so a bad version cancels nothing
        version = await version_registry.get_active(db, version_string)
        stale = await ledger.active_entry(db, client.id)
        if stale is not None:
            await ledger.terminate(
                db, client, stale, f"superseded: {reason or 'replaced by deploy of ' + version.version}"
            )
        client.target_version = version.version
        entry = await ledger.open_entry(db, client, version.version)
        await audit_trail.record(
            db,
            AuditEventType.DEPLOY_SUPERSEDED,
            actor=actor,
            resource_type="client",
            resource_id=client.id,
            update_id=entry.id,
            superseded_id=stale.id if stale is not None else None,
            to_version=version.version,
            reason=reason or None,
        )
    return entry, stale


async def cancel(db: AsyncSession, client_id: str, reason: str = "", actor: Optional[str] = None) -> UpdateLog:
    """Abandon the live entry; the client is left converged on what it runs now."""
    async with ledger.client_guard(db, client_id) as client:
        entry = await ledger.active_entry(db, client.id)
        if entry is None:
            raise NoActiveUpdate("Client has no update in flight")
        await ledger.terminate(db, client, entry, f"cancelled: {reason or 'by operator'}")
        current = await version_registry.find(db, client.current_version) if client.current_version else None
        client.target_version = current.version if current is not None else None
        await audit_trail.record(
            db,
            AuditEventType.DEPLOY_CANCELLED,
            actor=actor,
            resource_type="client",
            resource_id=client.id,
            update_id=entry.id,
            reason=reason or None,
        )
    return entry


# ============================================================
# CHECK-IN HANDLER
# ============================================================

async def check_in(
    db: AsyncSession,
    client: Client,
    reported_version: Optional[str],
    reported_status: Optional[str],
) -> CheckinResult:
    now = utcnow()
    async with ledger.client_guard(db, client.id) as locked:
        client_registry.record_checkin(locked, reported_version, reported_status, now=now)
        config = _agent_config(locked)

        entry = await ledger.active_entry(db, locked.id)
        if entry is None:
            if locked.target_version is None or locked.target_version == locked.current_version:
                return CheckinResult(action="none", config=config)
            # Target set without a ledger entry: open the missing one
            if await version_registry.find(db, locked.target_version) is None:
                logger.error(f"Client {locked.id} targets unknown version {locked.target_version!r}")
                return CheckinResult(action="none", config=config)
            logger.warning(
                f"Client {locked.id} had target {locked.target_version} with no ledger entry; repairing"
            )
            entry = await ledger.open_entry(db, locked, locked.target_version)

        ledger.hand_out(entry, now=now)
        version = await version_registry.find(db, entry.to_version)
        if version is None:
            raise NotFound(f"Version {entry.to_version} not found")
        return CheckinResult(action="update", entry=entry, version=version, config=config)


# ============================================================
# RESULT REPORTER
# ============================================================

async def _identify_entry(
    db: AsyncSession,
    client: Client,
    version: Optional[str],
    update_id: Optional[str],
) -> Optional[UpdateLog]:
    if update_id:
        entry = await ledger.get_entry(db, update_id)
        if entry is None or entry.client_id != client.id:
            return None
        if version and entry.to_version != version:
            return None
        return entry

    active = await ledger.active_entry(db, client.id)
    matches_active = active is not None and (version is None or active.to_version == version)
    if matches_active:
        # A pending match is rejected by the caller, never replayed against an older entry
        return active
    if version:
        # A retried report for an entry that already closed
        return await ledger.latest_terminal_for_version(db, client.id, version)
    return None


async def report_result(
    db: AsyncSession,
    client: Client,
    success: bool,
    version: Optional[str] = None,
    update_id: Optional[str] = None,
    error_message: Optional[str] = None,
) -> ReportResult:
    now = utcnow()
    async with ledger.client_guard(db, client.id) as locked:
        entry = await _identify_entry(db, locked, version, update_id)
        if entry is None or entry.status == UpdateStatus.PENDING:
            logger.warning(
                f"Stray result report from client {locked.id} "
                f"(success={success}, version={version}, update_id={update_id})"
            )
            raise NoActiveUpdate("No update in flight for this report")

        if entry.status.is_terminal:
            if (entry.status in SUCCESS_STATUSES) == success:
                logger.info(f"Duplicate report for update {entry.id} ({entry.status.value}); no change")
                return ReportResult(entry=entry, duplicate=True)
            logger.warning(
                f"Report success={success} contradicts terminal update {entry.id} ({entry.status.value}); ignored"
            )
            raise ConflictingReport(
                f"Update {entry.id} already finished as {entry.status.value}",
                update_id=entry.id,
                status=entry.status.value,
            )

        if success:
            ledger.complete_success(locked, entry, now=now)
            return ReportResult(entry=entry)

        rollback = await ledger.complete_failure(
            db,
            locked,
            entry,
            error_message=error_message,
            rollback_on_failure=client_registry.rollback_enabled(locked),
            now=now,
        )
        return ReportResult(entry=entry, rollback_entry=rollback)
