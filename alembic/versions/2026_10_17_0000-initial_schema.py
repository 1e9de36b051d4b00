"""initial schema

Revision ID: 2026_10_17_0000
Revises:
Create Date: 2026-10-17 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_17_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create profiles table
    # ========================================================================
    op.create_table(
        'profiles',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('subscription_status', sa.String(30), nullable=True),
        sa.Column('subscription_tier', sa.String(100), nullable=True),
        sa.Column('subscription_credits_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('purchased_credits_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('subscription_credits_balance >= 0', name='ck_subscription_credits_non_negative'),
        sa.CheckConstraint('purchased_credits_balance >= 0', name='ck_purchased_credits_non_negative'),
        sa.UniqueConstraint('stripe_customer_id', name='uq_profiles_stripe_customer_id'),
    )

    # ========================================================================
    # Create subscriptions table
    # ========================================================================
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('price_id', sa.String(255), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_index('idx_subscriptions_user_status_created', 'subscriptions', ['user_id', 'status', 'created_at'])

    # ========================================================================
    # Create webhook_events table
    # ========================================================================
    op.create_table(
        'webhook_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='processing'),
        sa.Column('payload', JSONB(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.UniqueConstraint('event_id', name='uq_webhook_events_event_id'),
        sa.CheckConstraint(
            "status IN ('processing', 'completed', 'failed', 'unrecoverable')",
            name='ck_webhook_event_status',
        ),
    )

    op.create_index('idx_webhook_events_status_created', 'webhook_events', ['status', 'created_at'])

    # ========================================================================
    # Create credit_transactions table
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('reference_id', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('user_id', 'type', 'reference_id', name='uq_credit_transactions_reference'),
        sa.CheckConstraint(
            "type IN ('purchase', 'subscription', 'usage', 'refund', 'bonus', "
            "'plan_upgrade', 'expired', 'rollover_cap', 'adjustment', 'clawback')",
            name='ck_credit_transaction_type',
        ),
    )

    op.create_index('idx_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'])
    op.create_index('idx_credit_transactions_reference', 'credit_transactions', ['reference_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('credit_transactions')
    op.drop_table('webhook_events')
    op.drop_table('subscriptions')
    op.drop_table('profiles')
