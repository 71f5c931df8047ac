# routers/versions.py - Version registry: upload, list, retire
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

import artifact_store
import version_registry
from auth import AdminRole, CurrentAdmin, require_min_role
from database import get_db_session, run_read
from errors import DuplicateVersion
from logging_system import LogCategory, get_logger
from models import Version, as_utc

router = APIRouter(prefix="/api/v1/versions", tags=["Versions"])
logger = get_logger(LogCategory.ARTIFACTS)


# --- Schemas ---

class VersionOut(BaseModel):
    id: str
    version: str
    artifact_filename: Optional[str] = None
    artifact_size: int
    checksum: str
    release_notes: Optional[str] = None
    is_active: bool
    download_url: str
    created_at: str


def _version_out(v: Version) -> VersionOut:
    created_at = as_utc(v.created_at)
    return VersionOut(
        id=v.id,
        version=v.version,
        artifact_filename=v.artifact_filename,
        artifact_size=v.artifact_size,
        checksum=v.checksum,
        release_notes=v.release_notes,
        is_active=bool(v.is_active),
        download_url=f"/api/v1/artifacts/{v.version}",
        created_at=created_at.isoformat() if created_at else "",
    )


# --- Endpoints ---

@router.post("", response_model=VersionOut, status_code=201)
async def upload_version(
    version: str = Form(..., min_length=1, max_length=50),
    artifact: UploadFile = File(...),
    release_notes: Optional[str] = Form(None),
    size: Optional[int] = Form(None, ge=0),
    checksum: Optional[str] = Form(None),
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Upload an artifact and register it as a new immutable version.

    `size` and `checksum` are optional declarations; when given they must match
    what was received or the upload is rejected.
    """
    version = version.strip()
    version_registry.parse_version(version)
    if await version_registry.find(db, version) is not None:
        raise DuplicateVersion(f"Version {version} already exists")

    stored = await artifact_store.store_upload(artifact, declared_size=size, declared_checksum=checksum)
    registered = await version_registry.register(
        db,
        version,
        artifact_ref=stored.ref,
        size=stored.size,
        checksum=stored.checksum,
        notes=release_notes,
        filename=artifact.filename,
        actor=admin.subject,
    )
    return _version_out(registered)


@router.get("", response_model=List[VersionOut])
async def list_versions(
    active_only: bool = Query(False),
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.VIEWER)),
    db: AsyncSession = Depends(get_db_session),
):
    versions = await run_read(db, version_registry.list_versions, active_only=active_only)
    return [_version_out(v) for v in versions]


@router.get("/latest", response_model=VersionOut)
async def latest_version(
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.VIEWER)),
    db: AsyncSession = Depends(get_db_session),
):
    """Highest active version by semantic ordering (not upload order)"""
    return _version_out(await run_read(db, version_registry.latest))


@router.get("/{version}", response_model=VersionOut)
async def get_version(
    version: str,
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.VIEWER)),
    db: AsyncSession = Depends(get_db_session),
):
    return _version_out(await run_read(db, version_registry.get, version))


@router.post("/{version}/retire", response_model=VersionOut)
async def retire_version(
    version: str,
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Retired versions stay downloadable for updates already issued"""
    return _version_out(await version_registry.set_active(db, version, False, actor=admin.subject))


@router.post("/{version}/activate", response_model=VersionOut)
async def activate_version(
    version: str,
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    return _version_out(await version_registry.set_active(db, version, True, actor=admin.subject))
