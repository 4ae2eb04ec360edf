"""create investigation tables

Revision ID: 3c1e9a7d2b40
Revises:
Create Date: 2026-02-20 15:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c1e9a7d2b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

platform_enum = sa.Enum('LESSWRONG', 'X', 'SUBSTACK', 'WIKIPEDIA', name='platform')
status_enum = sa.Enum('PENDING', 'PROCESSING', 'COMPLETE', 'FAILED', name='investigationstatus')
provenance_enum = sa.Enum('SERVER_VERIFIED', 'CLIENT_FALLBACK', name='contentprovenance')


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'posts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('platform', platform_enum, nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('url', sa.String(), nullable=False),
        sa.Column('author_name', sa.String(), nullable=True),
        sa.Column('published_at', sa.DateTime(), nullable=True),
        sa.Column('media_urls', sa.JSON(), nullable=True),
        sa.Column('latest_content_hash', sa.String(64), nullable=True),
        sa.Column('latest_content_text', sa.Text(), nullable=True),
        sa.Column('word_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unique_view_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('platform', 'external_id', name='uq_posts_platform_external_id'),
    )
    op.create_index('ix_posts_unique_view_score', 'posts', ['unique_view_score'], unique=False)

    op.create_table(
        'investigations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('post_id', sa.Uuid(), nullable=False),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('content_text', sa.Text(), nullable=False),
        sa.Column('status', status_enum, nullable=False),
        sa.Column('provenance', provenance_enum, nullable=False),
        sa.Column('fetch_failure_reason', sa.String(), nullable=True),
        sa.Column('server_verified_at', sa.DateTime(), nullable=True),
        sa.Column('checked_at', sa.DateTime(), nullable=True),
        sa.Column('parent_investigation_id', sa.Uuid(), nullable=True),
        sa.Column('content_diff', sa.Text(), nullable=True),
        sa.Column('model', sa.String(), nullable=True),
        sa.Column('model_version', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['post_id'], ['posts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['parent_investigation_id'], ['investigations.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('post_id', 'content_hash', name='uq_investigations_post_content_hash'),
    )
    op.create_index(op.f('ix_investigations_post_id'), 'investigations', ['post_id'], unique=False)

    op.create_table(
        'investigation_runs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('investigation_id', sa.Uuid(), nullable=False),
        sa.Column('lease_owner', sa.String(), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('queued_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['investigation_id'], ['investigations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('investigation_id'),
    )
    op.create_index(
        'ix_investigation_runs_lease_expires_at', 'investigation_runs', ['lease_expires_at'], unique=False
    )

    op.create_table(
        'claims',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('investigation_id', sa.Uuid(), nullable=False),
        sa.Column('claim_order', sa.Integer(), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('context', sa.Text(), nullable=False),
        sa.Column('summary', sa.Text(), nullable=False),
        sa.Column('reasoning', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['investigation_id'], ['investigations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_claims_investigation_id'), 'claims', ['investigation_id'], unique=False)

    op.create_table(
        'claim_sources',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('claim_id', sa.Uuid(), nullable=False),
        sa.Column('url', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('snippet', sa.Text(), nullable=False),
        sa.Column('snapshot_text', sa.Text(), nullable=False),
        sa.Column('snapshot_hash', sa.String(64), nullable=False),
        sa.Column('retrieved_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['claim_id'], ['claims.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_claim_sources_claim_id'), 'claim_sources', ['claim_id'], unique=False)

    op.create_table(
        'investigation_attempts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('investigation_id', sa.Uuid(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('outcome', sa.String(16), nullable=False),
        sa.Column('request_model', sa.String(), nullable=True),
        sa.Column('request_instructions', sa.Text(), nullable=True),
        sa.Column('request_input', sa.Text(), nullable=True),
        sa.Column('response_id', sa.String(), nullable=True),
        sa.Column('response_status', sa.String(), nullable=True),
        sa.Column('response_model_version', sa.String(), nullable=True),
        sa.Column('response_output_text', sa.Text(), nullable=True),
        sa.Column('usage', sa.JSON(), nullable=True),
        sa.Column('error_name', sa.String(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_status_code', sa.Integer(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['investigation_id'], ['investigations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('investigation_id', 'attempt_number', name='uq_investigation_attempt_number'),
    )
    op.create_index(
        op.f('ix_investigation_attempts_investigation_id'),
        'investigation_attempts',
        ['investigation_id'],
        unique=False,
    )

    op.create_table(
        'investigation_key_sources',
        sa.Column('run_id', sa.Uuid(), nullable=False),
        sa.Column('ciphertext', sa.Text(), nullable=False),
        sa.Column('nonce', sa.String(), nullable=False),
        sa.Column('key_id', sa.String(), nullable=False),
        sa.Column('fingerprint', sa.String(16), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['investigation_runs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('run_id'),
    )
    op.create_index(
        op.f('ix_investigation_key_sources_expires_at'), 'investigation_key_sources', ['expires_at'], unique=False
    )

    op.create_table(
        'investigation_trace_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('investigation_id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('phase', sa.String(), nullable=False),
        sa.Column('step', sa.String(), nullable=True),
        sa.Column('label', sa.String(), nullable=False),
        sa.Column('detail', sa.String(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['investigation_id'], ['investigations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        op.f('ix_investigation_trace_events_investigation_id'),
        'investigation_trace_events',
        ['investigation_id'],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f('ix_investigation_trace_events_investigation_id'), table_name='investigation_trace_events')
    op.drop_table('investigation_trace_events')
    op.drop_index(op.f('ix_investigation_key_sources_expires_at'), table_name='investigation_key_sources')
    op.drop_table('investigation_key_sources')
    op.drop_index(op.f('ix_investigation_attempts_investigation_id'), table_name='investigation_attempts')
    op.drop_table('investigation_attempts')
    op.drop_index(op.f('ix_claim_sources_claim_id'), table_name='claim_sources')
    op.drop_table('claim_sources')
    op.drop_index(op.f('ix_claims_investigation_id'), table_name='claims')
    op.drop_table('claims')
    op.drop_index('ix_investigation_runs_lease_expires_at', table_name='investigation_runs')
    op.drop_table('investigation_runs')
    op.drop_index(op.f('ix_investigations_post_id'), table_name='investigations')
    op.drop_table('investigations')
    op.drop_index('ix_posts_unique_view_score', table_name='posts')
    op.drop_table('posts')
    provenance_enum.drop(op.get_bind(), checkfirst=True)
    status_enum.drop(op.get_bind(), checkfirst=True)
    platform_enum.drop(op.get_bind(), checkfirst=True)
