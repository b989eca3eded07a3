"""
Initial schema: webhook events

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-19 10:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'mindbody_webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=True),
        sa.Column('event_type', sa.String(length=128), nullable=False),
        sa.Column('site_id', sa.String(length=64), nullable=True),
        sa.Column('event_data', sa.JSON(), nullable=False),
        sa.Column('headers', sa.JSON(), nullable=True),
        sa.Column('event_timestamp', sa.DateTime(), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('signature', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('event_id', name='uq_mindbody_webhook_events_event_id'),
    )
    op.create_index(
        'ix_mindbody_webhook_events_processed_created_at',
        'mindbody_webhook_events',
        ['processed', 'created_at'],
    )
    op.create_index(
        'ix_mindbody_webhook_events_event_type_processed',
        'mindbody_webhook_events',
        ['event_type', 'processed'],
    )
    op.create_index(
        'ix_mindbody_webhook_events_site_id_event_type',
        'mindbody_webhook_events',
        ['site_id', 'event_type'],
    )


def downgrade() -> None:
    op.drop_index('ix_mindbody_webhook_events_site_id_event_type', table_name='mindbody_webhook_events')
    op.drop_index('ix_mindbody_webhook_events_event_type_processed', table_name='mindbody_webhook_events')
    op.drop_index('ix_mindbody_webhook_events_processed_created_at', table_name='mindbody_webhook_events')
    op.drop_table('mindbody_webhook_events')
