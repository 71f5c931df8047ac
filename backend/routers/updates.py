# routers/updates.py - Update ledger history (read-only)
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

import ledger
from auth import AdminRole, CurrentAdmin, require_min_role
from database import get_db_session, run_read
from errors import NotFound
from models import UpdateLog, UpdateStatus, as_utc

router = APIRouter(prefix="/api/v1/updates", tags=["Update Ledger"])


# --- Schemas ---

class UpdateOut(BaseModel):
    id: str
    client_id: str
    from_version: Optional[str] = None
    to_version: str
    status: str
    is_rollback: bool
    rollback_of_id: Optional[str] = None
    error_message: Optional[str] = None
    started_at: str
    handed_out_at: Optional[str] = None
    completed_at: Optional[str] = None


def _iso(value) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def update_to_out(entry: UpdateLog) -> UpdateOut:
    return UpdateOut(
        id=entry.id,
        client_id=entry.client_id,
        from_version=entry.from_version,
        to_version=entry.to_version,
        status=entry.status.value if isinstance(entry.status, UpdateStatus) else entry.status,
        is_rollback=bool(entry.is_rollback),
        rollback_of_id=entry.rollback_of_id,
        error_message=entry.error_message,
        started_at=_iso(entry.started_at) or "",
        handed_out_at=_iso(entry.handed_out_at),
        completed_at=_iso(entry.completed_at),
    )


# --- Endpoints ---

@router.get("", response_model=List[UpdateOut])
async def list_updates(
    client_id: Optional[str] = Query(None),
    status: Optional[UpdateStatus] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.VIEWER)),
    db: AsyncSession = Depends(get_db_session),
):
    """Fleet-wide ledger, newest first"""
    entries = await run_read(db, ledger.history, client_id=client_id, status=status, limit=limit, offset=offset)
    return [update_to_out(e) for e in entries]


@router.get("/{update_id}", response_model=UpdateOut)
async def get_update(
    update_id: str,
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.VIEWER)),
    db: AsyncSession = Depends(get_db_session),
):
    entry = await run_read(db, ledger.get_entry, update_id)
    if entry is None:
        raise NotFound("Update not found")
    return update_to_out(entry)
