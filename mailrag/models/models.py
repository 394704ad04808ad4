import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import CheckConstraint, DateTime, Index, Integer, PrimaryKeyConstraint, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from mailrag.db.session import Base


SOURCE_TYPE = ("gmail", "drive")
SOURCE_STATUS = ("connected", "disconnected")
EMBEDDING_DIM = 768

# text columns with CHECK constraints so `source_type = ANY(:source_types)` binds a plain text[]
_SOURCE_TYPE_CHECK = "source_type IN ('gmail', 'drive')"


class DocumentChunks(Base):
    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("user_id", "source_type", "source_item_id", "chunk_index", name="uq_document_chunks_item_index"),
        CheckConstraint(_SOURCE_TYPE_CHECK, name="ck_document_chunks_source_type"),
        Index("ix_document_chunks_user_source", "user_id", "source_type"),
        Index("ix_document_chunks_user_created", "user_id", "created_at"),
    )
    chunk_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255))
    source_type: Mapped[str] = mapped_column(String(32))
    source_item_id: Mapped[str] = mapped_column(String(512))
    title: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    chunk_index: Mapped[int] = mapped_column(Integer)
    chunk_text: Mapped[str] = mapped_column(Text)
    embedding = mapped_column(Vector(EMBEDDING_DIM), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Sources(Base):
    __tablename__ = "sources"
    __table_args__ = (
        PrimaryKeyConstraint("user_id", "source_type", name="pk_sources"),
        CheckConstraint(_SOURCE_TYPE_CHECK, name="ck_sources_source_type"),
        CheckConstraint("status IN ('connected', 'disconnected')", name="ck_sources_status"),
    )
    user_id: Mapped[str] = mapped_column(String(255))
    source_type: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(32), default="connected", server_default="connected")
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
