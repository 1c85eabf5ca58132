"""Initial migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-01-31

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create palette_seeds table
    op.create_table(
        'palette_seeds',
        sa.Column('seed', sa.String(512), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create palette_tags table (one row per provider call)
    op.create_table(
        'palette_tags',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('seed', sa.String(512), nullable=False, index=True),
        sa.Column('provider', sa.String(100), nullable=False),
        sa.Column('model', sa.String(200), nullable=False),
        sa.Column('run_number', sa.Integer(), nullable=False),
        sa.Column('prompt_version', sa.String(32), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('(tags IS NULL) <> (error IS NULL)', name='ck_palette_tags_tags_xor_error'),
    )
    op.create_index('ix_palette_tags_seed_run_version', 'palette_tags', ['seed', 'run_number', 'prompt_version'])
    op.create_index('ix_palette_tags_prompt_version', 'palette_tags', ['prompt_version'])

    # Create palette_tag_refinements table
    op.create_table(
        'palette_tag_refinements',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('seed', sa.String(512), nullable=False, index=True),
        sa.Column('model', sa.String(200), nullable=False),
        sa.Column('prompt_version', sa.String(32), nullable=False),
        sa.Column('source_prompt_version', sa.String(32), nullable=False, index=True),
        sa.Column('input_summary', sa.JSON(), nullable=True),
        sa.Column('refined_tags', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('seed', 'source_prompt_version', name='uq_refinement_seed_source_version'),
        sa.CheckConstraint('(refined_tags IS NULL) <> (error IS NULL)', name='ck_refinements_tags_xor_error'),
    )


def downgrade() -> None:
    op.drop_table('palette_tag_refinements')
    op.drop_index('ix_palette_tags_prompt_version', table_name='palette_tags')
    op.drop_index('ix_palette_tags_seed_run_version', table_name='palette_tags')
    op.drop_table('palette_tags')
    op.drop_table('palette_seeds')
