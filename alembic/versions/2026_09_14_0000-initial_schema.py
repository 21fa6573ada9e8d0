"""initial schema

Revision ID: 2026_09_14_0000
Revises:
Create Date: 2026-09-14 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_09_14_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create subscription and usage ledger tables."""

    # ========================================================================
    # Create subscriptions table
    # ========================================================================
    op.create_table(
        'subscriptions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('plan_tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('billing_status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('external_customer_ref', sa.String(255), nullable=True),
        sa.Column('external_subscription_ref', sa.String(255), nullable=True),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint(
            "plan_tier IN ('free', 'standard', 'premium', 'pro_yearly')",
            name='ck_subscription_plan_tier',
        ),
        sa.CheckConstraint(
            "billing_status IN ('active', 'canceled', 'past_due', 'trialing')",
            name='ck_subscription_billing_status',
        ),
        sa.UniqueConstraint('user_id', name='uq_subscription_user'),
    )

    op.create_index(
        'idx_subscriptions_external_subscription_ref', 'subscriptions', ['external_subscription_ref'],
        postgresql_where=sa.text('external_subscription_ref IS NOT NULL'),
    )
    op.create_index(
        'idx_subscriptions_external_customer_ref', 'subscriptions', ['external_customer_ref'],
        postgresql_where=sa.text('external_customer_ref IS NOT NULL'),
    )

    # ========================================================================
    # Create usage_ledger table
    # ========================================================================
    op.create_table(
        'usage_ledger',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('receipt_scan_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('export_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('assistant_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('receipt_scan_count >= 0', name='ck_usage_receipt_scan_non_negative'),
        sa.CheckConstraint('export_count >= 0', name='ck_usage_export_non_negative'),
        sa.CheckConstraint('assistant_count >= 0', name='ck_usage_assistant_non_negative'),
        sa.UniqueConstraint('user_id', 'period_start', name='uq_usage_user_period'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('usage_ledger')
    op.drop_index('idx_subscriptions_external_customer_ref', table_name='subscriptions')
    op.drop_index('idx_subscriptions_external_subscription_ref', table_name='subscriptions')
    op.drop_table('subscriptions')
