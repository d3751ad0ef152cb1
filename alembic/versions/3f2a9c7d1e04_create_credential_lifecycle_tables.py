"""Create credential lifecycle tables

Revision ID: 3f2a9c7d1e04
Revises:
Create Date: 2026-10-19 09:12:44.318205

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f2a9c7d1e04'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credential, rotation request and lock lease tables."""
    # Secret material is encrypted with pgp_sym_encrypt
    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')

    op.create_table(
        'registry_credentials',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('registry_id', sa.String(length=100), nullable=False),
        sa.Column('external_name', sa.String(length=300), nullable=False),
        sa.Column('secret', postgresql.BYTEA(), nullable=False),
        sa.Column('owner_cluster_id', sa.String(length=255), nullable=True),
        sa.Column('external_resource_id', sa.String(length=100), nullable=True),
        sa.Column('rotation_request_id', sa.String(length=36), nullable=True),
        sa.Column('context', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_credential_owner_lookup',
        'registry_credentials',
        ['owner_cluster_id', 'registry_id', 'created_at'],
    )
    op.create_index(
        'ix_credential_pool_lookup', 'registry_credentials', ['registry_id', 'owner_cluster_id']
    )
    op.create_index(
        op.f('ix_registry_credentials_rotation_request_id'),
        'registry_credentials',
        ['rotation_request_id'],
    )
    op.create_index(
        op.f('ix_registry_credentials_created_at'), 'registry_credentials', ['created_at']
    )

    op.create_table(
        'rotation_requests',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('cluster_id', sa.String(length=255), nullable=False),
        sa.Column('cloud_provider', sa.String(length=50), nullable=True),
        sa.Column('region', sa.String(length=100), nullable=True),
        sa.Column('external_resource_id', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('reason', sa.String(length=20), nullable=False),
        sa.Column('force_immediate', sa.Boolean(), nullable=False),
        sa.Column('active_cluster_id', sa.String(length=255), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('active_cluster_id'),
    )
    op.create_index(op.f('ix_rotation_requests_cluster_id'), 'rotation_requests', ['cluster_id'])
    op.create_index(op.f('ix_rotation_requests_created_at'), 'rotation_requests', ['created_at'])
    op.create_index('ix_rotation_status_lookup', 'rotation_requests', ['status', 'created_at'])

    op.create_table(
        'cluster_locks',
        sa.Column('lock_key', sa.String(length=300), nullable=False),
        sa.Column('holder', sa.String(length=100), nullable=False),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('acquisition_count', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('lock_key'),
    )
    op.create_index(op.f('ix_cluster_locks_expires_at'), 'cluster_locks', ['expires_at'])


def downgrade() -> None:
    """Drop credential lifecycle tables."""
    op.drop_index(op.f('ix_cluster_locks_expires_at'), table_name='cluster_locks')
    op.drop_table('cluster_locks')

    op.drop_index('ix_rotation_status_lookup', table_name='rotation_requests')
    op.drop_index(op.f('ix_rotation_requests_created_at'), table_name='rotation_requests')
    op.drop_index(op.f('ix_rotation_requests_cluster_id'), table_name='rotation_requests')
    op.drop_table('rotation_requests')

    op.drop_index(op.f('ix_registry_credentials_created_at'), table_name='registry_credentials')
    op.drop_index(
        op.f('ix_registry_credentials_rotation_request_id'), table_name='registry_credentials'
    )
    op.drop_index('ix_credential_pool_lookup', table_name='registry_credentials')
    op.drop_index('ix_credential_owner_lookup', table_name='registry_credentials')
    op.drop_table('registry_credentials')
