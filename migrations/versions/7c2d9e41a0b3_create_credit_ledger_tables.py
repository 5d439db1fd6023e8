"""Create credit ledger tables

Revision ID: 7c2d9e41a0b3
Revises:
Create Date: 2026-09-02 10:15:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c2d9e41a0b3'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('credit_balances',
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('role', sa.String(length=32), nullable=False),
        sa.Column('current_balance', sa.Integer(), nullable=False),
        sa.Column('reserved_credits', sa.Integer(), nullable=False),
        sa.Column('total_purchased', sa.Integer(), nullable=False),
        sa.Column('total_bonus', sa.Integer(), nullable=False),
        sa.Column('total_refunded', sa.Integer(), nullable=False),
        sa.Column('total_used', sa.Integer(), nullable=False),
        sa.Column('total_expired', sa.Integer(), nullable=False),
        sa.Column('total_reversed', sa.Integer(), nullable=False),
        sa.Column('last_purchase_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_usage_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_awarded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('current_balance >= 0', name='ck_credit_balances_non_negative'),
        sa.CheckConstraint('reserved_credits >= 0', name='ck_credit_balances_reserved_non_negative'),
        sa.PrimaryKeyConstraint('user_id')
    )

    op.create_table('credit_transactions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('direction', sa.String(length=16), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('applied_credits', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('usage_type', sa.String(length=64), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('reference_id', sa.String(length=255), nullable=True),
        sa.Column('reference_type', sa.String(length=64), nullable=True),
        sa.Column('gateway_reference', sa.String(length=255), nullable=True),
        sa.Column('original_transaction_id', sa.String(length=36), nullable=True),
        sa.Column('balance_applied', sa.Boolean(), nullable=False),
        sa.Column('refunded_credits', sa.Integer(), nullable=False),
        sa.Column('expiry_processed', sa.Boolean(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('credits > 0', name='ck_credit_transactions_positive'),
        sa.ForeignKeyConstraint(['original_transaction_id'], ['credit_transactions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'], unique=False)
    op.create_index('ix_credit_transactions_status', 'credit_transactions', ['status'], unique=False)
    op.create_index('ix_credit_transactions_gateway_reference', 'credit_transactions', ['gateway_reference'], unique=False)
    op.create_index('ix_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'], unique=False)

    op.create_table('stripe_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=255), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('processing_result', sa.JSON(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dead_lettered', sa.Boolean(), nullable=False),
        sa.Column('requires_review', sa.Boolean(), nullable=False),
        sa.Column('transaction_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_event_id')
    )

    op.create_table('audit_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_events_user_id', 'audit_events', ['user_id'], unique=False)


def downgrade():
    op.drop_index('ix_audit_events_user_id', table_name='audit_events')
    op.drop_table('audit_events')
    op.drop_table('stripe_events')
    op.drop_index('ix_credit_transactions_user_created', table_name='credit_transactions')
    op.drop_index('ix_credit_transactions_gateway_reference', table_name='credit_transactions')
    op.drop_index('ix_credit_transactions_status', table_name='credit_transactions')
    op.drop_index('ix_credit_transactions_user_id', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_table('credit_balances')
