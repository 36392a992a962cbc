"""Create payments and refunds tables

Revision ID: 0005_payments_and_refunds
Revises: 0004_credit_ledger
Create Date: 2026-03-09

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0005_payments_and_refunds'
down_revision: Union[str, None] = '0004_credit_ledger'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create payments and refunds."""

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), sa.ForeignKey('subscriptions.id')),
        sa.Column('plan_id', sa.Uuid(), sa.ForeignKey('plans.id')),

        sa.Column('provider', sa.String(20), server_default='stripe', nullable=False),
        sa.Column('payment_type', sa.String(20), server_default='one_time', nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),

        # Money (minor units) and credits
        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('credits', sa.Integer, server_default='0', nullable=False),
        sa.Column('credits_granted', sa.Integer, server_default='0', nullable=False),
        sa.Column('refunded_amount', sa.Integer, server_default='0', nullable=False),

        # Gateway correlation
        sa.Column('external_payment_id', sa.String(255)),
        sa.Column('external_session_id', sa.String(255)),

        sa.Column('attempts', sa.Integer, server_default='0', nullable=False),
        sa.Column('failure_reason', sa.String(500)),
        sa.Column('confirmed_at', sa.DateTime(timezone=True)),
        sa.Column('cancelled_at', sa.DateTime(timezone=True)),
        sa.Column('metadata', sa.JSON),
        sa.Column('gateway_response', sa.JSON),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_external_payment_id', 'payments', ['external_payment_id'], unique=True)

    op.create_table(
        'refunds',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('payment_id', sa.Uuid(), sa.ForeignKey('payments.id'), nullable=False),
        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column('reason', sa.String(255)),
        sa.Column('external_refund_id', sa.String(255), unique=True),
        sa.Column('credits_reversed', sa.Integer, server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_refunds_payment_id', 'refunds', ['payment_id'])


def downgrade() -> None:
    """Drop refunds and payments."""
    op.drop_table('refunds')
    op.drop_table('payments')
