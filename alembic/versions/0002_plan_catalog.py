"""Create plan catalog tables

Revision ID: 0002_plan_catalog
Revises: 0001_users_and_sessions
Create Date: 2026-03-02

Plans, per-currency prices, features and the plan/feature link table.
All prices are integer minor currency units.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0002_plan_catalog'
down_revision: Union[str, None] = '0001_users_and_sessions'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create plans, plan_prices, features and plan_features."""

    op.create_table(
        'plans',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('slug', sa.String(60), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.String(500)),
        sa.Column('plan_type', sa.String(20), server_default='basic', nullable=False),

        # Pricing (minor units) and allowance
        sa.Column('monthly_price', sa.Integer, server_default='0', nullable=False),
        sa.Column('annual_price', sa.Integer, server_default='0', nullable=False),
        sa.Column('monthly_credits', sa.Integer, server_default='0', nullable=False),
        sa.Column('trial_days', sa.Integer, server_default='0', nullable=False),

        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('is_featured', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('sort_order', sa.Integer, server_default='0', nullable=False),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('metadata', sa.JSON),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_plans_slug', 'plans', ['slug'], unique=True)
    op.create_index('ix_plans_is_active', 'plans', ['is_active'])

    op.create_table(
        'plan_prices',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('plan_id', sa.Uuid(), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('interval', sa.String(20), nullable=False),
        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column('interval_count', sa.Integer, server_default='1', nullable=False),
        sa.Column('stripe_price_id', sa.String(255)),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('plan_id', 'currency', 'interval', name='uq_plan_prices_plan_currency_interval'),
    )
    op.create_index('ix_plan_prices_plan_id', 'plan_prices', ['plan_id'])

    op.create_table(
        'features',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('key', sa.String(80), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.String(500)),
        sa.Column('category', sa.String(50), server_default='general', nullable=False),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_features_key', 'features', ['key'], unique=True)

    op.create_table(
        'plan_features',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('plan_id', sa.Uuid(), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('feature_id', sa.Uuid(), sa.ForeignKey('features.id'), nullable=False),
        sa.Column('limit_value', sa.Integer),
        sa.Column('limit_unit', sa.String(30)),
        sa.Column('is_enabled', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('sort_order', sa.Integer, server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('plan_id', 'feature_id', name='uq_plan_features_plan_feature'),
    )
    op.create_index('ix_plan_features_plan_id', 'plan_features', ['plan_id'])
    op.create_index('ix_plan_features_feature_id', 'plan_features', ['feature_id'])


def downgrade() -> None:
    """Drop the catalog tables."""
    op.drop_table('plan_features')
    op.drop_table('features')
    op.drop_table('plan_prices')
    op.drop_table('plans')
