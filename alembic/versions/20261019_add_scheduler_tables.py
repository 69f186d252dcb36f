"""add scheduler locks, failed parsing jobs and tournaments

Revision ID: 20261019_scheduler_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic
revision = '20261019_scheduler_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        'scheduler_locks',
        sa.Column('job_name', sa.String(100), primary_key=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=False),
        sa.Column('instance_id', sa.String(100), nullable=False),
    )
    op.create_index('ix_scheduler_locks_instance_id', 'scheduler_locks', ['instance_id'])

    op.create_table(
        'failed_parsing_jobs',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('max_retries', sa.Integer(), server_default=sa.text('3'), nullable=False),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('job_type', 'source', 'external_id', name='uq_failed_parsing_jobs_identity'),
    )
    op.create_index('ix_failed_parsing_jobs_next_retry_at', 'failed_parsing_jobs', ['next_retry_at'])
    op.create_index('ix_failed_parsing_jobs_source', 'failed_parsing_jobs', ['source'])

    op.create_table(
        'tournaments',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('url', sa.String(500), nullable=True),
        sa.Column('is_ended', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_players_parsed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_stats_parsed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_tournaments_source', 'tournaments', ['source'])


def downgrade() -> None:
    op.drop_index('ix_tournaments_source', table_name='tournaments')
    op.drop_table('tournaments')
    op.drop_index('ix_failed_parsing_jobs_source', table_name='failed_parsing_jobs')
    op.drop_index('ix_failed_parsing_jobs_next_retry_at', table_name='failed_parsing_jobs')
    op.drop_table('failed_parsing_jobs')
    op.drop_index('ix_scheduler_locks_instance_id', table_name='scheduler_locks')
    op.drop_table('scheduler_locks')
