"""add post view credits

Revision ID: 5e7a2c9d4f18
Revises: 8d4b6f2e1a93
Create Date: 2026-02-21 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5e7a2c9d4f18'
down_revision: Union[str, Sequence[str], None] = '8d4b6f2e1a93'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'post_view_credits',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('post_id', sa.Uuid(), nullable=False),
        sa.Column('viewer_key', sa.String(64), nullable=False),
        sa.Column('ip_range_key', sa.String(64), nullable=False),
        sa.Column('bucket_day', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['post_id'], ['posts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('post_id', 'viewer_key', 'bucket_day', name='uq_post_view_credits_viewer_day'),
    )
    op.create_index(
        'ix_post_view_credits_ip_range_day',
        'post_view_credits',
        ['post_id', 'ip_range_key', 'bucket_day'],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_post_view_credits_ip_range_day', table_name='post_view_credits')
    op.drop_table('post_view_credits')
