"""create_catalog_tables

Revision ID: 5c1e9a7d2b40
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '5c1e9a7d2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Must match EMBEDDING_DIMENSION of the deployed model (all-MiniLM-L6-v2)
EMBEDDING_DIMENSION = 384


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was created (UTC)'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was last updated (UTC)'),
    ]


def upgrade() -> None:
    """
    Create the retrieval catalog.

    Tables:
    1. documents
    2. content_units
    3. chunks (with a generated tsvector + GIN index for keyword search)
    4. embeddings (pgvector column + HNSW index, usage counters)
    5. retrieval_events
    """
    op.execute('CREATE EXTENSION IF NOT EXISTS vector')

    # ================================
    # documents
    # ================================
    op.create_table(
        'documents',
        sa.Column('id', sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, comment='Processing status: pending, processing, processed, failed'),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('last_modified', sa.DateTime(timezone=True), nullable=False, comment='Source modification time, used for change detection'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_documents')),
    )
    op.create_index(op.f('ix_documents_status'), 'documents', ['status'])

    # ================================
    # content_units
    # ================================
    op.create_table(
        'content_units',
        sa.Column('id', sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.Column('document_id', sa.String(length=255), nullable=False),
        sa.Column('content_type', sa.String(length=20), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('content_hash', sa.String(length=64), nullable=False),
        sa.Column('embedding_model', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('chunk_count', sa.Integer(), nullable=False),
        sa.Column('failed_chunk_indices', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.ForeignKeyConstraint(['document_id'], ['documents.id'], name=op.f('fk_content_units_document_id_documents'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_content_units')),
    )
    op.create_index(op.f('ix_content_units_document_id'), 'content_units', ['document_id'])
    op.create_index(op.f('ix_content_units_status'), 'content_units', ['status'])

    # ================================
    # chunks
    # ================================
    op.create_table(
        'chunks',
        sa.Column('chunk_id', sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.Column('content_unit_id', sa.String(length=255), nullable=False),
        sa.Column('document_id', sa.String(length=255), nullable=False),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('char_start', sa.Integer(), nullable=False),
        sa.Column('char_end', sa.Integer(), nullable=False),
        sa.Column('token_start', sa.Integer(), nullable=False),
        sa.Column('token_end', sa.Integer(), nullable=False),
        sa.Column('content_type', sa.String(length=20), nullable=False),
        sa.Column('chunk_metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            'text_search_vector',
            postgresql.TSVECTOR(),
            sa.Computed("to_tsvector('english', text)", persisted=True),
            nullable=True,
        ),
        sa.ForeignKeyConstraint(['content_unit_id'], ['content_units.id'], name=op.f('fk_chunks_content_unit_id_content_units'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['document_id'], ['documents.id'], name=op.f('fk_chunks_document_id_documents'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('chunk_id', name=op.f('pk_chunks')),
        sa.UniqueConstraint('content_unit_id', 'chunk_index', name='uq_content_unit_chunk_index'),
    )
    op.create_index(op.f('ix_chunks_content_unit_id'), 'chunks', ['content_unit_id'])
    op.create_index(op.f('ix_chunks_document_id'), 'chunks', ['document_id'])
    op.create_index('ix_chunks_text_search_vector', 'chunks', ['text_search_vector'], postgresql_using='gin')

    # ================================
    # embeddings
    # ================================
    op.create_table(
        'embeddings',
        sa.Column('chunk_id', sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.Column('vector', Vector(EMBEDDING_DIMENSION), nullable=False, comment='Embedding vector for semantic search'),
        sa.Column('model', sa.String(length=255), nullable=False),
        sa.Column('dimension', sa.Integer(), nullable=False),
        sa.Column('usage_count', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['chunk_id'], ['chunks.chunk_id'], name=op.f('fk_embeddings_chunk_id_chunks'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('chunk_id', name=op.f('pk_embeddings')),
    )
    # HNSW: good recall without a training step, unlike IVFFlat
    op.execute("""
        CREATE INDEX ix_embeddings_vector_hnsw
        ON embeddings
        USING hnsw (vector vector_cosine_ops)
        WITH (m = 16, ef_construction = 64)
    """)

    # ================================
    # retrieval_events
    # ================================
    op.create_table(
        'retrieval_events',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('query', sa.Text(), nullable=False),
        sa.Column('query_vector', Vector(EMBEDDING_DIMENSION), nullable=True),
        sa.Column('k', sa.Integer(), nullable=False),
        sa.Column('filters', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('chunk_ids', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('scores', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('degraded_sources', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('timings_ms', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('total_ms', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_retrieval_events')),
    )
    op.create_index(op.f('ix_retrieval_events_created_at'), 'retrieval_events', ['created_at'])


def downgrade() -> None:
    """Drop the catalog in reverse dependency order."""
    op.drop_index(op.f('ix_retrieval_events_created_at'), table_name='retrieval_events')
    op.drop_table('retrieval_events')

    op.execute('DROP INDEX IF EXISTS ix_embeddings_vector_hnsw')
    op.drop_table('embeddings')

    op.drop_index('ix_chunks_text_search_vector', table_name='chunks')
    op.drop_index(op.f('ix_chunks_document_id'), table_name='chunks')
    op.drop_index(op.f('ix_chunks_content_unit_id'), table_name='chunks')
    op.drop_table('chunks')

    op.drop_index(op.f('ix_content_units_status'), table_name='content_units')
    op.drop_index(op.f('ix_content_units_document_id'), table_name='content_units')
    op.drop_table('content_units')

    op.drop_index(op.f('ix_documents_status'), table_name='documents')
    op.drop_table('documents')

    # pgvector extension is left installed; other databases objects may use it
