# routers/agent.py - Client agent surface: check-in and result reports
# Both endpoints are safe to retry: a repeated check-in gets the same
# instruction, a repeated report is acknowledged as a duplicate.
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

import update_engine
from auth import get_current_client
from database import get_db_session
from models import Client

router = APIRouter(prefix="/api/v1", tags=["Client Agent"])


# --- Schemas ---

class CheckinRequest(BaseModel):
    current_version: Optional[str] = Field(None, max_length=50)
    status: Optional[str] = Field(None, max_length=50)


class UpdateResultRequest(BaseModel):
    success: bool
    version: Optional[str] = Field(None, max_length=50)
    update_id: Optional[str] = None
    error_message: Optional[str] = None


class UpdateResultOut(BaseModel):
    acknowledged: bool = True
    update_id: str
    status: str
    duplicate: bool = False
    rollback_update_id: Optional[str] = None


# --- Endpoints ---

@router.post("/checkin")
async def checkin(
    data: CheckinRequest,
    client: Client = Depends(get_current_client),
    db: AsyncSession = Depends(get_db_session),
):
    """Heartbeat. Returns {"action": "none"} or an update instruction."""
    result = await update_engine.check_in(db, client, data.current_version, data.status)
    return result.to_response()


@router.post("/update-result", response_model=UpdateResultOut)
async def update_result(
    data: UpdateResultRequest,
    client: Client = Depends(get_current_client),
    db: AsyncSession = Depends(get_db_session),
):
    result = await update_engine.report_result(
        db,
        client,
        success=data.success,
        version=data.version,
        update_id=data.update_id,
        error_message=data.error_message,
    )
    return UpdateResultOut(
        update_id=result.entry.id,
        status=result.entry.status.value,
        duplicate=result.duplicate,
        rollback_update_id=result.rollback_entry.id if result.rollback_entry is not None else None,
    )
