# version_registry.py - Immutable catalogue of releasable artifacts
# Checksum and artifact reference are fixed at registration; the only mutable
# field is is_active (soft retirement).
import re
from typing import List, Optional

from packaging.version import InvalidVersion as _PackagingInvalidVersion, Version as SemanticVersion
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import audit_trail
from database import commit_mutation
from errors import DuplicateVersion, InactiveVersion, IntegrityMismatch, InvalidVersion, NotFound
from logging_system import LogCategory, get_logger
from models import AuditEventType, Version

logger = get_logger(LogCategory.ARTIFACTS)

SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


def parse_version(version_string: str) -> SemanticVersion:
    try:
        return SemanticVersion(version_string)
    except (_PackagingInvalidVersion, TypeError) as exc:
        raise InvalidVersion(f"Invalid version string: {version_string!r}") from exc


def sort_key(version: Version) -> SemanticVersion:
    return parse_version(version.version)


async def find(db: AsyncSession, version_string: str) -> Optional[Version]:
    """Look up a version regardless of is_active (historical references)."""
    if not version_string:
        return None
    stmt = select(Version).where(Version.version == version_string)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get(db: AsyncSession, version_string: str) -> Version:
    version = await find(db, version_string)
    if version is None:
        raise NotFound(f"Version {version_string} not found")
    return version


async def get_active(db: AsyncSession, version_string: str) -> Version:
    """Fetch a version eligible to become a new target."""
    version = await get(db, version_string)
    if not version.is_active:
        raise InactiveVersion(f"Version {version_string} is retired")
    return version


async def list_versions(db: AsyncSession, active_only: bool = False) -> List[Version]:
    stmt = select(Version)
    if active_only:
        stmt = stmt.where(Version.is_active.is_(True))
    stmt = stmt.order_by(Version.created_at.desc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def latest(db: AsyncSession) -> Version:
    """Highest active version by semantic ordering."""
    versions = await list_versions(db, active_only=True)
    if not versions:
        raise NotFound("No active versions registered")
    return max(versions, key=sort_key)


async def register(
    db: AsyncSession,
    version_string: str,
    artifact_ref: str,
    size: int,
    checksum: str,
    notes: Optional[str] = None,
    filename: Optional[str] = None,
    actor: Optional[str] = None,
) -> Version:
    version_string = (version_string or "").strip()
    parse_version(version_string)
    checksum = (checksum or "").lower()
    if not SHA256_HEX.match(checksum):
        raise IntegrityMismatch("Checksum must be a SHA-256 hex digest")
    if size is None or size < 0:
        raise IntegrityMismatch("Artifact size must be a non-negative integer")

    if await find(db, version_string) is not None:
        raise DuplicateVersion(f"Version {version_string} already exists")

    version = Version(
        version=version_string,
        artifact_ref=artifact_ref,
        artifact_filename=filename,
        artifact_size=size,
        checksum=checksum,
        release_notes=notes,
        is_active=True,
    )
    db.add(version)
    await audit_trail.record(
        db,
        AuditEventType.VERSION_REGISTERED,
        actor=actor,
        resource_type="version",
        resource_id=version_string,
        checksum=checksum,
        size=size,
    )
    try:
        await commit_mutation(db)
    except IntegrityError as exc:
        # Lost a race with a concurrent upload of the same version string
        await db.rollback()
        raise DuplicateVersion(f"Version {version_string} already exists") from exc
    await db.refresh(version)
    logger.info(f"Registered version {version_string} sha256={checksum[:12]} size={size}")
    return version


async def set_active(db: AsyncSession, version_string: str, active: bool, actor: Optional[str] = None) -> Version:
    version = await get(db, version_string)
    if version.is_active == active:
        return version
    version.is_active = active
    await audit_trail.record(
        db,
        AuditEventType.VERSION_ACTIVATED if active else AuditEventType.VERSION_RETIRED,
        actor=actor,
        resource_type="version",
        resource_id=version_string,
    )
    await commit_mutation(db)
    await db.refresh(version)
    logger.info(f"Version {version_string} {'activated' if active else 'retired'}")
    return version
