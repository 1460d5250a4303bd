"""Create run, registry, result and transcript tables

Revision ID: e1f2a3b4c5d6
Revises:
Create Date: 2026-10-19 09:00:00.000000

workflow_runs keeps every execution attempt; active_runs is the run
registry (one row per in-flight logical key). video_analyses,
slide_extractions and video_slides hold completed results.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'e1f2a3b4c5d6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    op.create_table(
        'workflow_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_id', sa.String(64), nullable=False),
        sa.Column('pipeline', sa.String(20), nullable=False),
        sa.Column('subject_id', sa.String(64), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('stats', JSONType, nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_workflow_runs_run_id', 'workflow_runs', ['run_id'], unique=True)
    op.create_index('ix_workflow_runs_pipeline', 'workflow_runs', ['pipeline'])
    op.create_index('ix_workflow_runs_subject_id', 'workflow_runs', ['subject_id'])

    op.create_table(
        'active_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('pipeline', sa.String(20), nullable=False),
        sa.Column('subject_id', sa.String(64), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('run_id', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('pipeline', 'subject_id', 'version', name='uq_active_runs_key'),
    )
    op.create_index('ix_active_runs_run_id', 'active_runs', ['run_id'])

    op.create_table(
        'video_analyses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subject_id', sa.String(64), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('run_id', sa.String(64), nullable=False),
        sa.Column('result', JSONType, nullable=False),
        sa.Column('additional_instructions', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('subject_id', 'version', name='uq_video_analyses_version'),
    )
    op.create_index('ix_video_analyses_subject_id', 'video_analyses', ['subject_id'])

    op.create_table(
        'slide_extractions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subject_id', sa.String(64), nullable=False),
        sa.Column('run_id', sa.String(64), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='completed'),
        sa.Column('total_slides', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('chapters', JSONType, nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_slide_extractions_subject_id', 'slide_extractions', ['subject_id'], unique=True)

    op.create_table(
        'video_slides',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subject_id', sa.String(64), nullable=False),
        sa.Column('slide_index', sa.Integer(), nullable=False),
        sa.Column('chapter_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('frame_id', sa.String(128), nullable=True),
        sa.Column('start_time', sa.Float(), nullable=False),
        sa.Column('end_time', sa.Float(), nullable=False),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('has_text', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('text_confidence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_duplicate', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('subject_id', 'slide_index', name='uq_video_slides_index'),
    )
    op.create_index('ix_video_slides_subject_id', 'video_slides', ['subject_id'])

    op.create_table(
        'transcripts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('video_id', sa.String(64), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('channel_name', sa.String(200), nullable=False, server_default=''),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('segments', JSONType, nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_transcripts_video_id', 'transcripts', ['video_id'], unique=True)


def downgrade() -> None:
    op.drop_index('ix_transcripts_video_id', table_name='transcripts')
    op.drop_table('transcripts')
    op.drop_index('ix_video_slides_subject_id', table_name='video_slides')
    op.drop_table('video_slides')
    op.drop_index('ix_slide_extractions_subject_id', table_name='slide_extractions')
    op.drop_table('slide_extractions')
    op.drop_index('ix_video_analyses_subject_id', table_name='video_analyses')
    op.drop_table('video_analyses')
    op.drop_index('ix_active_runs_run_id', table_name='active_runs')
    op.drop_table('active_runs')
    op.drop_index('ix_workflow_runs_subject_id', table_name='workflow_runs')
    op.drop_index('ix_workflow_runs_pipeline', table_name='workflow_runs')
    op.drop_index('ix_workflow_runs_run_id', table_name='workflow_runs')
    op.drop_table('workflow_runs')
