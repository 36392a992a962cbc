"""Create credit ledger tables

Revision ID: 0004_credit_ledger
Revises: 0003_subscriptions
Create Date: 2026-03-06

credit_transactions is append-only; credit_balances caches its
projection and is only updated through a compare-and-swap on version.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0004_credit_ledger'
down_revision: Union[str, None] = '0003_subscriptions'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credit_balances and credit_transactions."""

    op.create_table(
        'credit_balances',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),

        # Monthly bucket (subscription allowance)
        sa.Column('monthly_credits', sa.Integer, server_default='0', nullable=False),
        sa.Column('monthly_used', sa.Integer, server_default='0', nullable=False),
        sa.Column('monthly_reset_at', sa.DateTime(timezone=True)),

        # Extra bucket (purchases, bonuses)
        sa.Column('extra_credits', sa.Integer, server_default='0', nullable=False),
        sa.Column('extra_used', sa.Integer, server_default='0', nullable=False),

        sa.Column('total_earned', sa.Integer, server_default='0', nullable=False),
        sa.Column('total_consumed', sa.Integer, server_default='0', nullable=False),
        sa.Column('version', sa.Integer, server_default='0', nullable=False),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_credit_balances_user_id', 'credit_balances', ['user_id'], unique=True)

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('sequence', sa.BigInteger, nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column('balance_before', sa.Integer, nullable=False),
        sa.Column('balance_after', sa.Integer, nullable=False),
        sa.Column('bucket', sa.String(10), server_default='extra', nullable=False),
        sa.Column('description', sa.String(255)),
        sa.Column('expires_at', sa.DateTime(timezone=True)),
        sa.Column('reference_type', sa.String(50)),
        sa.Column('reference_id', sa.String(100)),
        sa.Column('idempotency_key', sa.String(200)),
        sa.Column('metadata', sa.JSON),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('user_id', 'sequence', name='uq_credit_transactions_user_sequence'),
    )
    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])
    op.create_index('ix_credit_transactions_type', 'credit_transactions', ['type'])
    op.create_index(
        'ix_credit_transactions_idempotency_key',
        'credit_transactions',
        ['idempotency_key'],
        unique=True,
    )
    op.create_index(
        'ix_credit_transactions_reference',
        'credit_transactions',
        ['reference_type', 'reference_id']
    )


def downgrade() -> None:
    """Drop the ledger tables."""
    op.drop_table('credit_transactions')
    op.drop_table('credit_balances')
