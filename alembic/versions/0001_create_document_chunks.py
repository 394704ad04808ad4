"""create document_chunks table

Revision ID: 0001_create_document_chunks
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql


revision = "0001_create_document_chunks"
down_revision = None
branch_labels = None
depends_on = None


EMBEDDING_DIM = 768
ANN_INDEX_NAME = "ix_document_chunks_embedding_ann"


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    op.create_table(
        "document_chunks",
        sa.Column("chunk_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("source_type", sa.String(length=32), nullable=False),
        sa.Column("source_item_id", sa.String(length=512), nullable=False),
        sa.Column("title", sa.String(length=1024), nullable=True),
        sa.Column("url", sa.String(length=2048), nullable=True),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIM), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("user_id", "source_type", "source_item_id", "chunk_index", name="uq_document_chunks_item_index"),
        sa.CheckConstraint("source_type IN ('gmail', 'drive')", name="ck_document_chunks_source_type"),
    )
    op.create_index("ix_document_chunks_user_source", "document_chunks", ["user_id", "source_type"])
    op.create_index("ix_document_chunks_user_created", "document_chunks", ["user_id", "created_at"])
    op.execute(
        f"""
        DO $$
        BEGIN
            IF EXISTS (SELECT 1 FROM pg_am WHERE amname = 'hnsw') THEN
                EXECUTE 'CREATE INDEX IF NOT EXISTS {ANN_INDEX_NAME} ON document_chunks USING hnsw (embedding vector_cosine_ops)';
            ELSIF EXISTS (SELECT 1 FROM pg_am WHERE amname = 'ivfflat') THEN
                EXECUTE 'CREATE INDEX IF NOT EXISTS {ANN_INDEX_NAME} ON document_chunks USING ivfflat (embedding vector_cosine_ops) WITH (lists = 100)';
            END IF;
        END
        $$;
        """
    )


def downgrade() -> None:
    op.execute(f"DROP INDEX IF EXISTS {ANN_INDEX_NAME}")
    op.drop_index("ix_document_chunks_user_created", table_name="document_chunks")
    op.drop_index("ix_document_chunks_user_source", table_name="document_chunks")
    op.drop_table("document_chunks")
