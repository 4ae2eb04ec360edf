"""add run recovery window

Separates recovery timing from lease ownership: lease_expires_at only covers
active leases, recover_after_at gates recovery of PROCESSING runs that have no
owner (released after a transient failure).

Revision ID: 8d4b6f2e1a93
Revises: 3c1e9a7d2b40
Create Date: 2026-02-20 16:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8d4b6f2e1a93'
down_revision: Union[str, Sequence[str], None] = '3c1e9a7d2b40'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.add_column(
        'investigation_runs',
        sa.Column('recover_after_at', sa.DateTime(), nullable=True)
    )
    op.create_index(
        'ix_investigation_runs_recover_after_at', 'investigation_runs', ['recover_after_at'], unique=False
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_investigation_runs_recover_after_at', table_name='investigation_runs')
    op.drop_column('investigation_runs', 'recover_after_at')
