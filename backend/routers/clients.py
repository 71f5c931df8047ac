# routers/clients.py - Client registry & deploy issuer (operator surface)
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

import client_registry
import ledger
import update_engine
from auth import AdminRole, CurrentAdmin, require_min_role
from client_registry import ClientConfig
from database import get_db_session, run_read
from models import UpdateStatus
from routers.updates import UpdateOut, update_to_out

router = APIRouter(prefix="/api/v1/clients", tags=["Clients"])


# --- Schemas ---

class ClientCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    config: Optional[ClientConfig] = None


class ClientOut(BaseModel):
    id: str
    name: str
    current_version: Optional[str] = None
    target_version: Optional[str] = None
    status: str
    reported_status: Optional[str] = None
    last_seen: Optional[str] = None
    active_update_id: Optional[str] = None
    config: Dict[str, Any]
    created_at: str


class ClientCreated(ClientOut):
    api_key: str = Field(..., description="Shown once; store it on the client host")


class DeployRequest(BaseModel):
    version: str = Field(..., min_length=1, max_length=50)


class SupersedeRequest(DeployRequest):
    reason: str = Field("", max_length=500)


class CancelRequest(BaseModel):
    reason: str = Field("", max_length=500)


class SupersedeOut(BaseModel):
    update: UpdateOut
    superseded: Optional[UpdateOut] = None


# --- Endpoints ---

@router.post("", response_model=ClientCreated, status_code=201)
async def register_client(
    data: ClientCreate,
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Register a host. The returned api_key is never retrievable again."""
    client, raw_secret = await client_registry.register(db, data.name, data.config, actor=admin.subject)
    return ClientCreated(api_key=raw_secret, **client_registry.describe(client))


@router.get("", response_model=List[ClientOut])
async def list_clients(
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.VIEWER)),
    db: AsyncSession = Depends(get_db_session),
):
    clients = await run_read(db, client_registry.list_clients)
    described = await run_read(db, client_registry.describe_many, clients)
    return [ClientOut(**d) for d in described]


@router.get("/{client_id}", response_model=ClientOut)
async def get_client(
    client_id: str,
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.VIEWER)),
    db: AsyncSession = Depends(get_db_session),
):
    client = await run_read(db, client_registry.get, client_id)
    described = await run_read(db, client_registry.describe_many, [client])
    return ClientOut(**described[0])


@router.put("/{client_id}/config", response_model=ClientOut)
async def update_client_config(
    client_id: str,
    config: ClientConfig,
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.OPERATOR)),
    db: AsyncSession = Depends(get_db_session),
):
    client = await client_registry.update_config(db, client_id, config, actor=admin.subject)
    described = await run_read(db, client_registry.describe_many, [client])
    return ClientOut(**described[0])


@router.post("/{client_id}/deploy", response_model=UpdateOut, status_code=201)
async def deploy_version(
    client_id: str,
    data: DeployRequest,
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.OPERATOR)),
    db: AsyncSession = Depends(get_db_session),
):
    """Target a client at a version; refused while another update is live."""
    entry = await update_engine.deploy(db, client_id, data.version, actor=admin.subject)
    return update_to_out(entry)


@router.post("/{client_id}/supersede", response_model=SupersedeOut, status_code=201)
async def supersede_update(
    client_id: str,
    data: SupersedeRequest,
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.OPERATOR)),
    db: AsyncSession = Depends(get_db_session),
):
    entry, stale = await update_engine.supersede(db, client_id, data.version, data.reason, actor=admin.subject)
    return SupersedeOut(
        update=update_to_out(entry),
        superseded=update_to_out(stale) if stale is not None else None,
    )


@router.post("/{client_id}/cancel", response_model=UpdateOut)
async def cancel_update(
    client_id: str,
    data: CancelRequest,
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.OPERATOR)),
    db: AsyncSession = Depends(get_db_session),
):
    entry = await update_engine.cancel(db, client_id, data.reason, actor=admin.subject)
    return update_to_out(entry)


@router.get("/{client_id}/updates", response_model=List[UpdateOut])
async def client_update_history(
    client_id: str,
    status: Optional[UpdateStatus] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.VIEWER)),
    db: AsyncSession = Depends(get_db_session),
):
    await run_read(db, client_registry.get, client_id)
    entries = await run_read(db, ledger.history, client_id=client_id, status=status, limit=limit, offset=offset)
    return [update_to_out(e) for e in entries]


@router.delete("/{client_id}")
async def delete_client(
    client_id: str,
    cascade: bool = Query(False),
    admin: CurrentAdmin = Depends(require_min_role(AdminRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    removed = await client_registry.delete_client(db, client_id, cascade=cascade, actor=admin.subject)
    return {"deleted": True, "client_id": client_id, "ledger_entries_removed": removed}
