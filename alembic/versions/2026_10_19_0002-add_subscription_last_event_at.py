"""add subscription last_event_at

Revision ID: 2026_10_19_0002
Revises: 2026_09_21_0001
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0002'
down_revision: Union[str, None] = '2026_09_21_0001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Track the processor timestamp of the newest applied billing event."""
    op.add_column(
        'subscriptions',
        sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    """Remove last_event_at."""
    op.drop_column('subscriptions', 'last_event_at')
