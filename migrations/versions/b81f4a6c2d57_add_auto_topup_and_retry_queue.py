"""Add auto_topup_policies table and webhook retry queue index

Revision ID: b81f4a6c2d57
Revises: 7c2d9e41a0b3
Create Date: 2026-09-16 14:40:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b81f4a6c2d57'
down_revision = '7c2d9e41a0b3'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('auto_topup_policies',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('trigger_balance', sa.Integer(), nullable=False),
        sa.Column('topup_amount', sa.Integer(), nullable=False),
        sa.Column('package_type', sa.String(length=32), nullable=False),
        sa.Column('payment_method_id', sa.String(length=255), nullable=True),
        sa.Column('failure_count', sa.Integer(), nullable=False),
        sa.Column('last_triggered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_failure_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_failure_reason', sa.Text(), nullable=True),
        sa.Column('pending_transaction_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id')
    )

    # Retry sweep scans unprocessed, live events by next_retry_at
    op.create_index(
        'ix_stripe_events_retry_queue', 'stripe_events',
        ['processed', 'dead_lettered', 'next_retry_at'], unique=False,
    )


def downgrade():
    op.drop_index('ix_stripe_events_retry_queue', table_name='stripe_events')
    op.drop_table('auto_topup_policies')
