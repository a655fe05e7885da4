"""create_export_tables

Revision ID: 3f9c2a7d1b40
Revises:
Create Date: 2026-10-19 09:12:44.310522

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9c2a7d1b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'records',
        sa.Column('collection', sa.String(), nullable=False),
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('deleted', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('collection', 'id')
    )
    op.create_index(op.f('ix_records_collection'), 'records', ['collection'], unique=False)
    op.create_index('ix_records_collection_deleted', 'records', ['collection', 'deleted'], unique=False)

    op.create_table(
        'locations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('identifiers', sa.JSON(), nullable=True),
        sa.Column('parent_location_id', sa.String(), nullable=True),
        sa.Column('geographical_level_id', sa.String(), nullable=True),
        sa.Column('deleted', sa.Boolean(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_locations_parent_location_id'), 'locations', ['parent_location_id'], unique=False)

    op.create_table(
        'language_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('language_id', sa.String(), nullable=False),
        sa.Column('token', sa.String(), nullable=False),
        sa.Column('translation', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('language_id', 'token', name='uq_language_tokens_language_token')
    )
    op.create_index(op.f('ix_language_tokens_id'), 'language_tokens', ['id'], unique=False)
    op.create_index(op.f('ix_language_tokens_language_id'), 'language_tokens', ['language_id'], unique=False)
    op.create_index(op.f('ix_language_tokens_token'), 'language_tokens', ['token'], unique=False)

    op.create_table(
        'export_jobs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('schema_name', sa.String(), nullable=False),
        sa.Column('collection', sa.String(), nullable=False),
        sa.Column('export_type', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('status_step', sa.String(), nullable=False),
        sa.Column('total_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('row_errors', sa.JSON(), nullable=True),
        sa.Column('mime_type', sa.String(), nullable=False),
        sa.Column('extension', sa.String(), nullable=False),
        sa.Column('file_path', sa.String(), nullable=True),
        sa.Column('size_bytes', sa.BigInteger(), nullable=True),
        sa.Column('filter', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('error_stack', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('aggregate_completed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_export_jobs_status'), 'export_jobs', ['status'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_export_jobs_status'), table_name='export_jobs')
    op.drop_table('export_jobs')
    op.drop_index(op.f('ix_language_tokens_token'), table_name='language_tokens')
    op.drop_index(op.f('ix_language_tokens_language_id'), table_name='language_tokens')
    op.drop_index(op.f('ix_language_tokens_id'), table_name='language_tokens')
    op.drop_table('language_tokens')
    op.drop_index(op.f('ix_locations_parent_location_id'), table_name='locations')
    op.drop_table('locations')
    op.drop_index('ix_records_collection_deleted', table_name='records')
    op.drop_index(op.f('ix_records_collection'), table_name='records')
    op.drop_table('records')
