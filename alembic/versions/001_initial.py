"""Initial migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-12

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create evaluation_jobs table
    op.create_table(
        'evaluation_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('owner_id', sa.String(100), nullable=False, index=True),
        sa.Column('submission_id', sa.String(100), nullable=False, index=True),
        sa.Column('status', sa.String(20), nullable=False, default='pending', index=True),
        sa.Column('stage', sa.String(20), nullable=False, default='pending_upload'),
        sa.Column('evaluation_mode', sa.String(20), nullable=False, default='audio'),
        sa.Column('audio_refs', postgresql.JSON(), nullable=False),
        sa.Column('durations', postgresql.JSON(), nullable=True),
        sa.Column('exam_metadata', postgresql.JSON(), nullable=True),
        sa.Column('transcripts', postgresql.JSON(), nullable=True),
        sa.Column('callback_url', sa.Text(), nullable=True),
        sa.Column('prepared_audio', postgresql.JSON(), nullable=True),
        sa.Column('partial_results', postgresql.JSON(), nullable=False),
        sa.Column('part_failures', postgresql.JSON(), nullable=False),
        sa.Column('current_part', sa.Integer(), nullable=True),
        sa.Column('total_parts', sa.Integer(), nullable=False, default=0),
        sa.Column('progress', sa.Integer(), nullable=False, default=0),
        sa.Column('lock_owner_token', sa.String(64), nullable=True),
        sa.Column('lock_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, default=0),
        sa.Column('max_retries', sa.Integer(), nullable=False, default=5),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('result_id', postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('upload_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Create api_credentials table
    op.create_table(
        'api_credentials',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('provider', sa.String(30), nullable=False, default='gemini', index=True),
        sa.Column('label', sa.String(100), nullable=False),
        sa.Column('secret', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, default=True),
        sa.Column('error_count', sa.Integer(), nullable=False, default=0),
        sa.Column('consecutive_rate_limits', sa.Integer(), nullable=False, default=0),
        sa.Column('rate_limited_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_rate_limited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create credential_quotas table
    op.create_table(
        'credential_quotas',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('credential_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('api_credentials.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('capability', sa.String(50), nullable=False),
        sa.Column('exhausted', sa.Boolean(), nullable=False, default=False),
        sa.Column('exhausted_date', sa.Date(), nullable=True),
        sa.UniqueConstraint('credential_id', 'capability'),
    )

    # Create credential_locks table
    op.create_table(
        'credential_locks',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('credential_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('api_credentials.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('job_id', postgresql.UUID(as_uuid=False), nullable=False, index=True),
        sa.Column('part_number', sa.Integer(), nullable=False),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('release_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cooldown_until', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('credential_id', 'job_id', 'part_number'),
    )

    # Create evaluation_results table
    op.create_table(
        'evaluation_results',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('submission_id', sa.String(100), nullable=False, unique=True),
        sa.Column('owner_id', sa.String(100), nullable=False, index=True),
        sa.Column('job_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('overall_band', sa.Float(), nullable=False),
        sa.Column('evaluation_mode', sa.String(10), nullable=False),
        sa.Column('payload', postgresql.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    # Create indexes
    op.create_index('ix_evaluation_jobs_stage_updated_at', 'evaluation_jobs', ['stage', 'updated_at'])
    op.create_index('ix_evaluation_jobs_next_attempt_at', 'evaluation_jobs', ['next_attempt_at'])


def downgrade() -> None:
    op.drop_index('ix_evaluation_jobs_next_attempt_at')
    op.drop_index('ix_evaluation_jobs_stage_updated_at')
    op.drop_table('evaluation_results')
    op.drop_table('credential_locks')
    op.drop_table('credential_quotas')
    op.drop_table('api_credentials')
    op.drop_table('evaluation_jobs')
