"""create sources table

Revision ID: 0002_create_sources
Revises: 0001_create_document_chunks
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_create_sources"
down_revision = "0001_create_document_chunks"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sources",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("source_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="connected"),
        sa.Column("connected_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("user_id", "source_type", name="pk_sources"),
        sa.CheckConstraint("source_type IN ('gmail', 'drive')", name="ck_sources_source_type"),
        sa.CheckConstraint("status IN ('connected', 'disconnected')", name="ck_sources_status"),
    )


def downgrade() -> None:
    op.drop_table("sources")
