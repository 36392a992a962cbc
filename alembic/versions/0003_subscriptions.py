"""Create subscriptions table

Revision ID: 0003_subscriptions
Revises: 0002_plan_catalog
Create Date: 2026-03-04

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0003_subscriptions'
down_revision: Union[str, None] = '0002_plan_catalog'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_STATUS_PREDICATE = "status IN ('active', 'trialing')"


def upgrade() -> None:
    """Create subscriptions with the one-live-subscription-per-user index."""

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('plan_id', sa.Uuid(), sa.ForeignKey('plans.id'), nullable=False),

        # Subscription details
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('billing_interval', sa.String(20), server_default='monthly', nullable=False),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('amount', sa.Integer, server_default='0', nullable=False),

        # Billing period dates
        sa.Column('current_period_start', sa.DateTime(timezone=True)),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),
        sa.Column('trial_start', sa.DateTime(timezone=True)),
        sa.Column('trial_end', sa.DateTime(timezone=True)),
        sa.Column('auto_renew', sa.Boolean, server_default=sa.true(), nullable=False),

        # Lifecycle bookkeeping
        sa.Column('cancelled_at', sa.DateTime(timezone=True)),
        sa.Column('cancelled_reason', sa.String(500)),
        sa.Column('ended_at', sa.DateTime(timezone=True)),
        sa.Column('past_due_since', sa.DateTime(timezone=True)),

        # Credits
        sa.Column('credits_per_period', sa.Integer, server_default='0', nullable=False),
        sa.Column('credits_granted', sa.Integer, server_default='0', nullable=False),

        sa.Column('pending_plan_id', sa.Uuid(), sa.ForeignKey('plans.id')),
        sa.Column('external_subscription_id', sa.String(255)),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('metadata', sa.JSON),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
    op.create_index(
        'ix_subscriptions_external_subscription_id',
        'subscriptions',
        ['external_subscription_id'],
        unique=True,
    )

    # Sweep scans by status and period end
    op.create_index(
        'ix_subscriptions_status_period_end',
        'subscriptions',
        ['status', 'current_period_end']
    )

    # At most one active/trialing subscription per user
    op.create_index(
        'uq_subscriptions_one_live_per_user',
        'subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text(LIVE_STATUS_PREDICATE),
        sqlite_where=sa.text(LIVE_STATUS_PREDICATE),
    )


def downgrade() -> None:
    """Drop subscriptions table."""
    op.drop_index('uq_subscriptions_one_live_per_user', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status_period_end', table_name='subscriptions')
    op.drop_table('subscriptions')
