# routers/artifacts.py - Artifact download for client agents and operators
from typing import Union

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

import artifact_store
import version_registry
from auth import CurrentAdmin, get_client_or_admin
from database import get_db_session, run_read
from logging_system import LogCategory, get_logger
from models import Client

router = APIRouter(prefix="/api/v1/artifacts", tags=["Artifacts"])
logger = get_logger(LogCategory.ARTIFACTS)


@router.get("/{version}")
async def download_artifact(
    version: str,
    caller: Union[Client, CurrentAdmin] = Depends(get_client_or_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Stream a version's bytes. Retired versions remain downloadable."""
    registered = await run_read(db, version_registry.get, version)
    path = artifact_store.resolve(registered.artifact_ref)

    if isinstance(caller, Client):
        logger.info(f"Client {caller.id} downloading {registered.version}")

    return FileResponse(
        path,
        media_type="application/octet-stream",
        filename=registered.artifact_filename or f"{registered.version}.bin",
        headers={
            "X-Checksum-SHA256": registered.checksum,
        },
    )
