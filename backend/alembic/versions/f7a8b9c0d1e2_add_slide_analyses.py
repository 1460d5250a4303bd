"""Add slide_analyses table

Revision ID: f7a8b9c0d1e2
Revises: e1f2a3b4c5d6
Create Date: 2026-10-19 15:00:00.000000

One markdown rendering per extracted slide, overwritten when a slide is
analyzed again.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'f7a8b9c0d1e2'
down_revision: Union[str, None] = 'e1f2a3b4c5d6'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'slide_analyses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subject_id', sa.String(64), nullable=False),
        sa.Column('slide_index', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.String(64), nullable=False),
        sa.Column('markdown', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('subject_id', 'slide_index', name='uq_slide_analyses_index'),
    )
    op.create_index('ix_slide_analyses_subject_id', 'slide_analyses', ['subject_id'])


def downgrade() -> None:
    op.drop_index('ix_slide_analyses_subject_id', table_name='slide_analyses')
    op.drop_table('slide_analyses')
