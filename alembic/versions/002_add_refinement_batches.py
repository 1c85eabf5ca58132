"""Add refinement_batches table and batch_id to refinements

Revision ID: 002_add_refinement_batches
Revises: 001_initial
Create Date: 2026-02-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002_add_refinement_batches'
down_revision: Union[str, None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Durable correlation map for submitted batches
    op.create_table(
        'refinement_batches',
        sa.Column('batch_id', sa.String(100), primary_key=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='in_progress'),
        sa.Column('model', sa.String(200), nullable=False),
        sa.Column('source_prompt_version', sa.String(32), nullable=False),
        sa.Column('request_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('correlation_map', sa.JSON(), nullable=False),
        sa.Column('stored_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.add_column(
        'palette_tag_refinements',
        sa.Column('batch_id', sa.String(100), nullable=True)
    )


def downgrade() -> None:
    op.drop_column('palette_tag_refinements', 'batch_id')
    op.drop_table('refinement_batches')
