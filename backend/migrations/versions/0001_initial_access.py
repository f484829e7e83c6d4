"""initial access control tables

Revision ID: 0001_initial_access
Revises:
Create Date: 2025-11-11
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial_access'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade():
    op.create_table('access_rights',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('operation_key', sa.String(length=200), nullable=False),
        sa.Column('short_key', sa.String(length=200), nullable=False),
        sa.Column('short_description', sa.String(length=300), nullable=False),
        sa.Column('details', sa.String(length=1000), nullable=True),
        *_timestamps()
    )
    op.create_index('ix_access_rights_operation_key', 'access_rights', ['operation_key'], unique=True)
    op.create_index('ix_access_rights_short_key', 'access_rights', ['short_key'], unique=True)

    op.create_table('roles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=100), nullable=False, unique=True),
        sa.Column('description', sa.String(length=1000), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        sa.Column('grants_version', sa.Integer(), nullable=False, server_default=sa.text('0')),
        *_timestamps()
    )

    op.create_table('access_right_role',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('access_right_id', sa.Integer(), sa.ForeignKey('access_rights.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('role_id', 'access_right_id', name='uq_access_right_role'),
    )
    op.create_index('ix_access_right_role_role_id', 'access_right_role', ['role_id'])

    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=128), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role_id', 'users', ['role_id'])

    op.create_table('site_features',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.text('0')),
    )
    op.create_index('ix_site_features_name', 'site_features', ['name'], unique=True)

    op.create_table('access_sync_state',
        sa.Column('name', sa.String(length=64), primary_key=True),
        sa.Column('runs', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('checksum', sa.String(length=64), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
    )
    sync_state = sa.table('access_sync_state', sa.column('name', sa.String), sa.column('runs', sa.Integer))
    # row-locked by every sync run, so it must exist before the first one
    op.bulk_insert(sync_state, [{'name': 'access', 'runs': 0}])

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_user_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('entity', sa.String(length=64)),
        sa.Column('entity_id', sa.String(length=64)),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'))
    )
    op.create_index('ix_audit_logs_actor_user_id', 'audit_logs', ['actor_user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])


def downgrade():
    for tbl in ['audit_logs', 'access_sync_state', 'site_features', 'users', 'access_right_role', 'roles', 'access_rights']:
        op.drop_table(tbl)
