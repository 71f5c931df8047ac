# auth.py - Authentication for fleet-deploy
# Two kinds of caller:
# - Operators: short-lived HS256 JWTs carrying a role (viewer < operator < admin)
# - Clients: per-host bearer secrets issued at registration (see client_registry)

import enum
import logging
import os
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

import client_registry
from database import get_db_session, run_read
from errors import Unauthorized
from logging_system import get_current_context, log_security
from models import Client

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logging.getLogger("fleet-deploy.auth").warning(
        "JWT_SECRET_KEY not set. Generated ephemeral key; operator tokens "
        "will not survive a restart."
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

security = HTTPBearer(auto_error=False)


# ============================================================
# ROLE HIERARCHY
# ============================================================

class AdminRole(str, enum.Enum):
    VIEWER = "viewer"
    OPERATOR = "operator"
    ADMIN = "admin"


ROLE_HIERARCHY = {
    AdminRole.ADMIN: 3,
    AdminRole.OPERATOR: 2,
    AdminRole.VIEWER: 1,
}


class CurrentAdmin(BaseModel):
    subject: str
    role: str


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Operator token issue/verify"""

    @staticmethod
    def create_access_token(subject: str, role: AdminRole, expires_delta: Optional[timedelta] = None) -> str:
        now = datetime.now(timezone.utc)
        to_encode: Dict[str, Any] = {
            "sub": subject,
            "role": AdminRole(role).value,
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise Unauthorized("Token expired")
        except JWTError:
            raise Unauthorized("Invalid token")

    @staticmethod
    def admin_from_token(token: str) -> CurrentAdmin:
        payload = AuthService.verify_token(token)
        if payload.get("type") != "access":
            raise Unauthorized("Invalid token type")
        subject = payload.get("sub")
        role = payload.get("role")
        if not subject or role not in {r.value for r in AdminRole}:
            raise Unauthorized("Invalid token")
        return CurrentAdmin(subject=subject, role=role)


def _bind_actor(actor: str) -> None:
    ctx = get_current_context()
    if ctx is not None:
        ctx.actor = actor


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CurrentAdmin:
    if credentials is None:
        raise Unauthorized("Operator token required")
    admin = AuthService.admin_from_token(credentials.credentials)
    _bind_actor(f"admin:{admin.subject}")
    return admin


def require_min_role(min_role: AdminRole):
    """Dependency factory: require operator role level >= min_role"""
    async def _check(admin: CurrentAdmin = Depends(get_current_admin)) -> CurrentAdmin:
        admin_level = ROLE_HIERARCHY.get(AdminRole(admin.role), 0)
        required_level = ROLE_HIERARCHY.get(min_role, 0)
        if admin_level < required_level:
            log_security("admin.insufficient_role", subject=admin.subject, role=admin.role, required=min_role.value)
            raise HTTPException(status_code=403, detail="Insufficient role level")
        return admin
    return _check


def _client_secret(
    credentials: Optional[HTTPAuthorizationCredentials],
    x_api_key: Optional[str],
) -> Optional[str]:
    if x_api_key:
        return x_api_key
    if credentials is not None:
        return credentials.credentials
    return None


async def get_current_client(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    db: AsyncSession = Depends(get_db_session),
) -> Client:
    """Client agent authentication: Authorization: Bearer <secret> or X-API-Key."""
    client = await run_read(db, client_registry.authenticate, _client_secret(credentials, x_api_key))
    _bind_actor(f"client:{client.id}")
    return client


async def get_client_or_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    db: AsyncSession = Depends(get_db_session),
) -> Union[Client, CurrentAdmin]:
    """Artifact downloads are open to the fleet and to any operator."""
    secret = _client_secret(credentials, x_api_key)
    if secret and secret.startswith(client_registry.CLIENT_SECRET_PREFIX):
        client = await run_read(db, client_registry.authenticate, secret)
        _bind_actor(f"client:{client.id}")
        return client
    if credentials is None:
        raise Unauthorized("Client credential or operator token required")
    admin = AuthService.admin_from_token(credentials.credentials)
    _bind_actor(f"admin:{admin.subject}")
    return admin
