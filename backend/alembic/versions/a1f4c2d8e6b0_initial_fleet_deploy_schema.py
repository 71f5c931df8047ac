"""Initial fleet-deploy schema (versions, clients, update ledger, audit)

Revision ID: a1f4c2d8e6b0
Revises:
Create Date: 2026-10-18T09:12:44.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1f4c2d8e6b0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_STATUSES = "status IN ('pending', 'in_progress')"


def upgrade() -> None:
    # --- versions ---
    op.create_table(
        'versions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('version', sa.String(50), nullable=False),
        sa.Column('artifact_ref', sa.String(500), nullable=False),
        sa.Column('artifact_filename', sa.String(255), nullable=True),
        sa.Column('artifact_size', sa.BigInteger(), nullable=False),
        sa.Column('checksum', sa.String(64), nullable=False),
        sa.Column('release_notes', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_versions_version', 'versions', ['version'], unique=True)
    op.create_index('ix_versions_is_active', 'versions', ['is_active'])
    op.create_index('ix_versions_created_at', 'versions', ['created_at'])

    # --- clients ---
    op.create_table(
        'clients',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('key_hash', sa.String(64), nullable=False),
        sa.Column('key_prefix', sa.String(16), nullable=False),
        sa.Column('current_version', sa.String(50), nullable=True),
        sa.Column('target_version', sa.String(50), sa.ForeignKey('versions.version'), nullable=True),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reported_status', sa.String(50), nullable=True),
        sa.Column('last_healthy_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('config', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key_hash'),
    )
    op.create_index('ix_clients_key_prefix', 'clients', ['key_prefix'])
    op.create_index('ix_clients_created_at', 'clients', ['created_at'])

    # --- update_logs ---
    op.create_table(
        'update_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('client_id', sa.String(), sa.ForeignKey('clients.id', ondelete='CASCADE'), nullable=False),
        sa.Column('from_version', sa.String(50), nullable=True),
        sa.Column('to_version', sa.String(50), sa.ForeignKey('versions.version'), nullable=False),
        sa.Column('status', sa.Enum('pending', 'in_progress', 'success', 'failed', 'rolled_back', name='updatestatus'), nullable=False, server_default='pending'),
        sa.Column('is_rollback', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('rollback_of_id', sa.String(), sa.ForeignKey('update_logs.id', ondelete='SET NULL'), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('handed_out_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_update_logs_client_id', 'update_logs', ['client_id'])
    op.create_index('ix_update_logs_status', 'update_logs', ['status'])
    op.create_index('ix_update_logs_started_at', 'update_logs', ['started_at'])
    op.create_index('idx_update_log_client_started', 'update_logs', ['client_id', 'started_at'])
    op.create_index(
        'uq_update_log_single_flight',
        'update_logs',
        ['client_id'],
        unique=True,
        postgresql_where=sa.text(LIVE_STATUSES),
        sqlite_where=sa.text(LIVE_STATUSES),
    )

    # --- audit_logs ---
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('event_type', sa.Enum(
            'client.registered', 'client.config_updated', 'client.deleted',
            'version.registered', 'version.retired', 'version.activated',
            'deploy.issued', 'deploy.superseded', 'deploy.cancelled',
            name='auditeventtype'), nullable=False),
        sa.Column('actor', sa.String(), nullable=True),
        sa.Column('resource_type', sa.String(), nullable=True),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_resource_id', 'audit_logs', ['resource_id'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('update_logs')
    op.drop_table('clients')
    op.drop_table('versions')
    op.execute("DROP TYPE IF EXISTS auditeventtype")
    op.execute("DROP TYPE IF EXISTS updatestatus")
