"""Create datasource catalog table

Revision ID: 001_tinypivot_datasources
Revises:
Create Date: 2026-10-18

This migration adds:
- tinypivot_datasources table for user-tier datasources
- indexes on owner, type, tier and active flag
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_tinypivot_datasources'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'tinypivot_datasources',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('tier', sa.String(10), nullable=False, server_default='user'),
        sa.Column('env_prefix', sa.String(100), nullable=True),
        sa.Column('connection_config', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        # Encrypted credentials
        sa.Column('encrypted_credentials', sa.Text(), nullable=True),
        sa.Column('credentials_iv', sa.String(32), nullable=True),
        sa.Column('credentials_auth_tag', sa.String(32), nullable=True),
        sa.Column('credentials_salt', sa.String(32), nullable=True),
        # Encrypted OAuth refresh token
        sa.Column('encrypted_refresh_token', sa.Text(), nullable=True),
        sa.Column('refresh_token_iv', sa.String(32), nullable=True),
        sa.Column('refresh_token_auth_tag', sa.String(32), nullable=True),
        sa.Column('refresh_token_salt', sa.String(32), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auth_method', sa.String(20), nullable=False, server_default='password'),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('last_tested_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_test_result', sa.String(20), nullable=True),
        sa.Column('last_test_error', sa.Text(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_tinypivot_datasources_user_id', 'tinypivot_datasources', ['user_id'])
    op.create_index('ix_tinypivot_datasources_type', 'tinypivot_datasources', ['type'])
    op.create_index('ix_tinypivot_datasources_tier', 'tinypivot_datasources', ['tier'])
    op.create_index('ix_tinypivot_datasources_active', 'tinypivot_datasources', ['active'])


def downgrade() -> None:
    op.drop_index('ix_tinypivot_datasources_active', table_name='tinypivot_datasources')
    op.drop_index('ix_tinypivot_datasources_tier', table_name='tinypivot_datasources')
    op.drop_index('ix_tinypivot_datasources_type', table_name='tinypivot_datasources')
    op.drop_index('ix_tinypivot_datasources_user_id', table_name='tinypivot_datasources')
    op.drop_table('tinypivot_datasources')
