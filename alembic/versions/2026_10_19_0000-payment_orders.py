"""payment orders and subscriptions

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create payment ledger and subscription tables."""

    # ========================================================================
    # Create payment_orders table
    # ========================================================================
    op.create_table(
        'payment_orders',
        sa.Column('id', sa.String(128), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('plan_id', sa.String(50), nullable=False),
        sa.Column('plan_name', sa.String(100), nullable=False),
        sa.Column('billing_cycle', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('provider_tracking_id', sa.String(255), nullable=True),
        sa.Column('merchant_reference', sa.String(255), nullable=True),
        sa.Column('billing_first_name', sa.String(100), nullable=False),
        sa.Column('billing_last_name', sa.String(100), nullable=False),
        sa.Column('billing_email', sa.String(255), nullable=False),
        sa.Column('billing_phone', sa.String(32), nullable=False),
        sa.Column('billing_address', sa.String(255), nullable=True),
        sa.Column('billing_city', sa.String(100), nullable=True),
        sa.Column('billing_state', sa.String(100), nullable=True),
        sa.Column('billing_postal_code', sa.String(20), nullable=True),
        sa.Column('provider_status', sa.String(50), nullable=True),
        sa.Column('provider_status_code', sa.Integer(), nullable=True),
        sa.Column('payment_method', sa.String(100), nullable=True),
        sa.Column('payment_account', sa.String(100), nullable=True),
        sa.Column('confirmation_code', sa.String(100), nullable=True),
        sa.Column('divergence_reason', sa.Text(), nullable=True),
        sa.Column('divergence_detected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('activation_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.CheckConstraint('amount > 0', name='ck_payment_amount_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'failed', 'cancelled', 'invalid')",
            name='ck_payment_status',
        ),
        sa.CheckConstraint("billing_cycle IN ('monthly', 'yearly')", name='ck_payment_billing_cycle'),
        sa.UniqueConstraint('provider_tracking_id', name='uq_payment_tracking_id'),
    )

    op.create_index('idx_payment_orders_user_id', 'payment_orders', ['user_id'])
    op.create_index('idx_payment_orders_status', 'payment_orders', ['status'])
    op.create_index(
        'idx_payment_orders_divergent',
        'payment_orders',
        ['divergence_detected_at'],
        postgresql_where=sa.text('divergence_reason IS NOT NULL'),
    )

    # ========================================================================
    # Create user_subscriptions table
    # ========================================================================
    op.create_table(
        'user_subscriptions',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('status', sa.String(20), nullable=False, server_default='inactive'),
        sa.Column('billing_cycle', sa.String(20), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('last_payment_order_id', sa.String(128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("tier IN ('free', 'premium', 'pro')", name='ck_subscription_tier'),
        sa.CheckConstraint("status IN ('inactive', 'active')", name='ck_subscription_status'),
    )

    # ========================================================================
    # Create subscription_records table
    # ========================================================================
    op.create_table(
        'subscription_records',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('plan_id', sa.String(50), nullable=False),
        sa.Column('billing_cycle', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('payment_method', sa.String(50), nullable=False, server_default='pesapal'),
        sa.Column('payment_order_id', sa.String(128), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('payment_order_id', name='uq_subscription_record_order'),
    )

    op.create_index('idx_subscription_records_user_id', 'subscription_records', ['user_id'])


def downgrade() -> None:
    """Drop payment ledger and subscription tables."""
    op.drop_index('idx_subscription_records_user_id', table_name='subscription_records')
    op.drop_table('subscription_records')
    op.drop_table('user_subscriptions')
    op.drop_index('idx_payment_orders_divergent', table_name='payment_orders')
    op.drop_index('idx_payment_orders_status', table_name='payment_orders')
    op.drop_index('idx_payment_orders_user_id', table_name='payment_orders')
    op.drop_table('payment_orders')
