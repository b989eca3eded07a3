"""
Add API tokens table

Revision ID: 0002_api_tokens
Revises: 0001_initial
Create Date: 2026-10-19 10:05:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002_api_tokens'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'mindbody_api_tokens',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column('username', sa.String(length=255), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('token_type', sa.String(length=32), nullable=False, server_default='Bearer'),
        sa.Column('expires_in', sa.Integer(), nullable=False),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('revoked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_mindbody_api_tokens_username', 'mindbody_api_tokens', ['username'])
    op.create_index('ix_mindbody_api_tokens_expires_at', 'mindbody_api_tokens', ['expires_at'])
    op.create_index(
        'ix_mindbody_api_tokens_username_expires_at_revoked',
        'mindbody_api_tokens',
        ['username', 'expires_at', 'revoked'],
    )


def downgrade() -> None:
    op.drop_index('ix_mindbody_api_tokens_username_expires_at_revoked', table_name='mindbody_api_tokens')
    op.drop_index('ix_mindbody_api_tokens_expires_at', table_name='mindbody_api_tokens')
    op.drop_index('ix_mindbody_api_tokens_username', table_name='mindbody_api_tokens')
    op.drop_table('mindbody_api_tokens')
