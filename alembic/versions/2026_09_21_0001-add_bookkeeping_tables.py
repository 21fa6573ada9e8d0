"""add bookkeeping tables

Revision ID: 2026_09_21_0001
Revises: 2026_09_14_0000
Create Date: 2026-09-21 10:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_09_21_0001'
down_revision: Union[str, None] = '2026_09_14_0000'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add sales, expenses and expense_categories."""
    op.create_table(
        'expense_categories',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('category_type', sa.String(20), nullable=False, server_default='variable'),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint("category_type IN ('fixed', 'variable')", name='ck_expense_category_type'),
        sa.UniqueConstraint('user_id', 'name', name='uq_expense_category_user_name'),
    )

    op.create_table(
        'sales',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('crop_name', sa.String(255), nullable=False),
        sa.Column('customer', sa.String(255), nullable=True),
        sa.Column('unit_price', sa.BigInteger(), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 2), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('idx_sales_user_date', 'sales', ['user_id', 'date'])

    op.create_table(
        'expenses',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('category_id', UUID(as_uuid=True), nullable=True),
        sa.Column('category', sa.String(255), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.ForeignKeyConstraint(
            ['category_id'], ['expense_categories.id'],
            name='fk_expenses_category', ondelete='SET NULL',
        ),
    )
    op.create_index('idx_expenses_user_date', 'expenses', ['user_id', 'date'])


def downgrade() -> None:
    """Drop bookkeeping tables."""
    op.drop_index('idx_expenses_user_date', table_name='expenses')
    op.drop_table('expenses')
    op.drop_index('idx_sales_user_date', table_name='sales')
    op.drop_table('sales')
    op.drop_table('expense_categories')
