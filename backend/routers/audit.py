# routers/audit.py - Administrative audit trail
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

import audit_trail
from auth import AdminRole, CurrentAdmin, require_min_role
from database import get_db_session, run_read
from models import AuditEventType, AuditLog, as_utc

router = APIRouter(prefix="/api/v1/audit", tags=["Audit"])


class AuditOut(BaseModel):
    id: str
    event_type: str
    actor: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any]
    request_id: Optional[str] = None
    created_at: str


def _audit_out(a: AuditLog) -> AuditOut:
    created_at = as_utc(a.created_at)
    return AuditOut(
        id=a.id,
        event_type=a.event_type.value if isinstance(a.event_type, AuditEventType) else a.event_type,
        actor=a.actor,
        resource_type=a.resource_type,
        resource_id=a.resource_id,
        details=a.details or {},
        request_id=a.request_id,
        created_at=created_at.isoformat() if created_at else "",
    )


@router.get("", response_model=List[AuditOut])
async def list_audit_events(
    event_type: Optional[AuditEventType] = Query(None),
    resource_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    events = await run_read(
        db, audit_trail.list_events, event_type=event_type, resource_id=resource_id, limit=limit, offset=offset
    )
    return [_audit_out(e) for e in events]
