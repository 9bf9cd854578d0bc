"""Ingestion schema

Revision ID: 3b9e1f6c2a71
Revises: 
Create Date: 2026-10-18 09:12:44.318502

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3b9e1f6c2a71'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Content-addressed blobs, one row per distinct file
    op.create_table('file_blobs',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('raw_hash', sa.Text(), nullable=False),
        sa.Column('preview_hash', sa.Text(), nullable=True),
        sa.Column('size_bytes', sa.BigInteger(), nullable=False),
        sa.Column('mime_type', sa.Text(), nullable=False),
        sa.Column('original_filename', sa.Text(), nullable=False),
        sa.Column('storage_path', sa.Text(), nullable=False),
        sa.Column('preview_text', sa.Text(), nullable=True),
        sa.Column('extracted_text_char_count', sa.Integer(), nullable=True),
        sa.Column('needs_ocr', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('ocr_status', sa.Text(), server_default='none', nullable=False),
        sa.Column('ocr_text', sa.Text(), nullable=True),
        sa.Column('ocr_text_char_count', sa.Integer(), nullable=True),
        sa.Column('ocr_failure_reason', sa.Text(), nullable=True),
        sa.Column('ocr_queued_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('ocr_started_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('ocr_completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('ocr_reindexed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('raw_hash', name='uq_file_blobs_raw_hash')
    )
    op.create_index('ix_file_blobs_preview_hash', 'file_blobs', ['preview_hash'])
    op.create_index('ix_file_blobs_ocr_queue', 'file_blobs', ['ocr_status', 'ocr_queued_at'])

    # Logical documents and their versions
    op.create_table('logical_documents',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('canonical_title', sa.Text(), nullable=False),
        sa.Column('town', sa.Text(), nullable=False),
        sa.Column('board', sa.Text(), nullable=True),
        sa.Column('category', sa.Text(), nullable=True),
        sa.Column('current_version_id', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('canonical_title', 'town', name='uq_logical_documents_title_town')
    )

    op.create_table('document_versions',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('document_id', sa.Text(), nullable=False),
        sa.Column('blob_id', sa.Text(), nullable=True),
        sa.Column('year', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('store_id', sa.Text(), nullable=False),
        sa.Column('search_document_id', sa.Text(), nullable=False),
        sa.Column('is_current', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('supersedes_version_id', sa.Text(), nullable=True),
        sa.Column('is_minutes', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('meeting_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['document_id'], ['logical_documents.id'], ),
        sa.ForeignKeyConstraint(['blob_id'], ['file_blobs.id'], ),
        sa.ForeignKeyConstraint(['supersedes_version_id'], ['document_versions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    # At most one current version per document
    op.create_index(
        'uq_document_versions_current', 'document_versions', ['document_id'],
        unique=True, postgresql_where=sa.text('is_current')
    )
    op.create_foreign_key(
        'fk_logical_documents_current_version', 'logical_documents', 'document_versions',
        ['current_version_id'], ['id']
    )

    # Review pipeline jobs
    op.create_table('ingestion_jobs',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('blob_id', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), server_default='staging', nullable=False),
        sa.Column('suggested_metadata', postgresql.JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('final_metadata', postgresql.JSONB(), nullable=True),
        sa.Column('duplicate_warning', sa.Text(), nullable=True),
        sa.Column('document_id', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Text(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['blob_id'], ['file_blobs.id'], ),
        sa.ForeignKeyConstraint(['document_id'], ['logical_documents.id'], ),
        sa.ForeignKeyConstraint(['version_id'], ['document_versions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_ingestion_jobs_status', 'ingestion_jobs', ['status', 'created_at'])

    # Bucket sync ledger, one row per object key
    op.create_table('s3_gemini_sync',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('source_key', sa.Text(), nullable=False),
        sa.Column('town', sa.Text(), nullable=False),
        sa.Column('store_id', sa.Text(), nullable=False),
        sa.Column('category', sa.Text(), nullable=True),
        sa.Column('board', sa.Text(), nullable=True),
        sa.Column('year', sa.Integer(), nullable=True),
        sa.Column('meeting_date', sa.Date(), nullable=True),
        sa.Column('is_minutes', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('size_bytes', sa.BigInteger(), server_default=sa.text('0'), nullable=False),
        sa.Column('status', sa.Text(), server_default='pending', nullable=False),
        sa.Column('search_document_id', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('synced_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source_key', name='uq_s3_gemini_sync_source_key')
    )
    op.create_index('ix_s3_gemini_sync_pending', 's3_gemini_sync', ['status', 'town', 'created_at'])

    # One File Search store per town
    op.create_table('search_stores',
        sa.Column('town', sa.Text(), nullable=False),
        sa.Column('store_id', sa.Text(), nullable=False),
        sa.Column('display_name', sa.Text(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('town')
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('search_stores')
    op.drop_index('ix_s3_gemini_sync_pending', table_name='s3_gemini_sync')
    op.drop_table('s3_gemini_sync')
    op.drop_index('ix_ingestion_jobs_status', table_name='ingestion_jobs')
    op.drop_table('ingestion_jobs')
    op.drop_constraint('fk_logical_documents_current_version', 'logical_documents', type_='foreignkey')
    op.drop_index('uq_document_versions_current', table_name='document_versions')
    op.drop_table('document_versions')
    op.drop_table('logical_documents')
    op.drop_index('ix_file_blobs_ocr_queue', table_name='file_blobs')
    op.drop_index('ix_file_blobs_preview_hash', table_name='file_blobs')
    op.drop_table('file_blobs')
