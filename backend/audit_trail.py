# audit_trail.py - Administrative audit records
# Entries are added to the caller's session so they commit (or roll back)
# together with the action they describe.
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from logging_system import current_request_id, log_audit
from models import AuditEventType, AuditLog


async def record(
    db: AsyncSession,
    event_type: AuditEventType,
    actor: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    **details,
) -> AuditLog:
    entry = AuditLog(
        event_type=event_type,
        actor=actor,
        resource_type=resource_type,
        resource_id=resource_id,
        details={k: v for k, v in details.items() if v is not None},
        request_id=current_request_id(),
    )
    db.add(entry)
    log_audit(event_type.value, f"{resource_type}:{resource_id}", actor=actor)
    return entry


async def list_events(
    db: AsyncSession,
    event_type: Optional[AuditEventType] = None,
    resource_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLog]:
    stmt = select(AuditLog)
    if event_type:
        stmt = stmt.where(AuditLog.event_type == event_type)
    if resource_id:
        stmt = stmt.where(AuditLog.resource_id == resource_id)
    stmt = stmt.order_by(AuditLog.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
