# models.py - Database models for fleet-deploy
# Three core entities plus the admin audit trail:
# - Client: managed host identity, hashed bearer secret, reported/target versions
# - Version: immutable artifact catalogue (checksum is the integrity anchor)
# - UpdateLog: per-client deployment ledger (single flight enforced by index)
# - AuditLog: administrative actions

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, BigInteger,
    Enum as SQLEnum, ForeignKey, Text, Index, text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ============================================================
# ENUMS
# ============================================================

class ClientStatus(str, PyEnum):
    OFFLINE = "offline"
    ONLINE = "online"
    UPDATING = "updating"
    ERROR = "error"


class UpdateStatus(str, PyEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self not in NON_TERMINAL_STATUSES


NON_TERMINAL_STATUSES = (UpdateStatus.PENDING, UpdateStatus.IN_PROGRESS)
SUCCESS_STATUSES = (UpdateStatus.SUCCESS, UpdateStatus.ROLLED_BACK)


class AuditEventType(str, PyEnum):
    CLIENT_REGISTERED = "client.registered"
    CLIENT_CONFIG_UPDATED = "client.config_updated"
    CLIENT_DELETED = "client.deleted"
    VERSION_REGISTERED = "version.registered"
    VERSION_RETIRED = "version.retired"
    VERSION_ACTIVATED = "version.activated"
    DEPLOY_ISSUED = "deploy.issued"
    DEPLOY_SUPERSEDED = "deploy.superseded"
    DEPLOY_CANCELLED = "deploy.cancelled"


# ============================================================
# VERSIONS (artifact catalogue)
# ============================================================

class Version(Base):
    __tablename__ = "versions"

    id = Column(String, primary_key=True, default=new_uuid)
    version = Column(String(50), unique=True, nullable=False, index=True)
    # Opaque blob store key; never rewritten after creation
    artifact_ref = Column(String(500), nullable=False)
    artifact_filename = Column(String(255), nullable=True)
    artifact_size = Column(BigInteger, nullable=False)
    checksum = Column(String(64), nullable=False)  # SHA-256 hex
    release_notes = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


# ============================================================
# CLIENTS (managed hosts)
# ============================================================

class Client(Base):
    __tablename__ = "clients"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String(255), nullable=False)
    key_hash = Column(String(64), unique=True, nullable=False)
    key_prefix = Column(String(16), nullable=False, index=True)
    current_version = Column(String(50), nullable=True)
    target_version = Column(String(50), ForeignKey("versions.version"), nullable=True)
    last_seen = Column(DateTime(timezone=True), nullable=True)
    reported_status = Column(String(50), nullable=True)
    last_healthy_at = Column(DateTime(timezone=True), nullable=True)
    config = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# UPDATE LEDGER
# ============================================================

class UpdateLog(Base):
    __tablename__ = "update_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    client_id = Column(String, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    # Self-reported by the client, so not necessarily a registered version
    from_version = Column(String(50), nullable=True)
    to_version = Column(String(50), ForeignKey("versions.version"), nullable=False)
    status = Column(
        SQLEnum(UpdateStatus, name="updatestatus", values_callable=_enum_values),
        nullable=False,
        default=UpdateStatus.PENDING,
        index=True,
    )
    is_rollback = Column(Boolean, nullable=False, default=False)
    rollback_of_id = Column(String, ForeignKey("update_logs.id", ondelete="SET NULL"), nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    handed_out_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_update_log_client_started", "client_id", "started_at"),
        # At most one pending/in_progress entry per client
        Index(
            "uq_update_log_single_flight",
            "client_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'in_progress')"),
            sqlite_where=text("status IN ('pending', 'in_progress')"),
        ),
    )


# ============================================================
# AUDIT LOG (administrative actions)
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    event_type = Column(
        SQLEnum(AuditEventType, name="auditeventtype", values_callable=_enum_values),
        nullable=False,
        index=True,
    )
    actor = Column(String, nullable=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True, index=True)
    details = Column(JSON, nullable=False, default=dict)
    request_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
