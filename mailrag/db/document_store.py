from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from mailrag.core.errors import ValidationError
from mailrag.db.errors import StoreTransactionError, _commit_or_raise, _rollback_quietly, map_store_error
from mailrag.schemas.api import ChunkMetadata

LOGGER = logging.getLogger(__name__)

_CHUNK_COLUMNS = """
    chunk_id::text AS chunk_id, source_type, source_item_id, title, url, chunk_index,
    chunk_text, metadata, created_at
"""


def _sql(statement: str):
    return text(statement)


def _lock_key(owner_id: str, source_type: str) -> str:
    return f"document_chunks:{owner_id}:{source_type}"


def contains_pattern(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class DocumentStore:
    """Transactional chunk storage keyed by (owner, source type, source item)."""

    def __init__(self, db: Any, embedding_dim: int | None = None):
        if embedding_dim is None:
            from mailrag.core.config import settings

            embedding_dim = settings.EMBEDDING_DIM
        self.db = db
        self.embedding_dim = int(embedding_dim)

    @staticmethod
    def _to_vector_literal(embedding: list[float]) -> str:
        return "[" + ",".join(f"{float(x):.8f}" for x in embedding) + "]"

    def validate_upsert(
        self,
        owner_id: str,
        source_type: str,
        source_item_id: str,
        chunks: list[str],
        embeddings: list[list[float] | None] | None,
    ) -> None:
        if not owner_id or not source_type or not source_item_id:
            raise ValidationError(message="owner_id, source_type and source_item_id are required")
        if not chunks:
            raise ValidationError(message="at least one chunk is required")
        if embeddings is None:
            return
        if len(embeddings) != len(chunks):
            raise ValidationError(
                message=f"embeddings length {len(embeddings)} does not match chunk count {len(chunks)}"
            )
        for position, embedding in enumerate(embeddings):
            if embedding is not None and len(embedding) != self.embedding_dim:
                raise ValidationError(
                    message=f"embedding {position} has dimension {len(embedding)}, expected {self.embedding_dim}"
                )

    def upsert(
        self,
        owner_id: str,
        source_type: str,
        source_item_id: str,
        title: str | None,
        url: str | None,
        chunks: list[str],
        embeddings: list[list[float] | None] | None = None,
        metadata: ChunkMetadata | dict[str, Any] | None = None,
    ) -> int:
        self.validate_upsert(owner_id, source_type, source_item_id, chunks, embeddings)
        if isinstance(metadata, ChunkMetadata):
            metadata_json = metadata.to_json()
        else:
            metadata_json = ChunkMetadata.model_validate(metadata or {}).to_json()
        vectors = embeddings or [None] * len(chunks)

        try:
            self.db.execute(
                _sql("SELECT pg_advisory_xact_lock_shared(hashtext(:lock_key))"),
                {"lock_key": _lock_key(owner_id, source_type)},
            )
            self.db.execute(
                _sql(
                    """
                    DELETE FROM document_chunks
                    WHERE user_id = :user_id AND source_type = :source_type AND source_item_id = :source_item_id
                    """
                ),
                {"user_id": owner_id, "source_type": source_type, "source_item_id": source_item_id},
            )
            for index, (chunk_text, embedding) in enumerate(zip(chunks, vectors)):
                self.db.execute(
                    _sql(
                        """
                        INSERT INTO document_chunks (
                            chunk_id, user_id, source_type, source_item_id, title, url,
                            chunk_index, chunk_text, embedding, metadata, created_at
                        ) VALUES (
                            :chunk_id, :user_id, :source_type, :source_item_id, :title, :url,
                            :chunk_index, :chunk_text, CAST(:embedding AS vector), CAST(:metadata AS jsonb), now()
                        )
                        """
                    ),
                    {
                        "chunk_id": str(uuid.uuid4()),
                        "user_id": owner_id,
                        "source_type": source_type,
                        "source_item_id": source_item_id,
                        "title": title,
                        "url": url,
                        "chunk_index": index,
                        "chunk_text": chunk_text,
                        "embedding": None if embedding is None else self._to_vector_literal(embedding),
                        "metadata": json.dumps(metadata_json, ensure_ascii=False),
                    },
                )
        except SQLAlchemyError as exc:
            _rollback_quietly(self.db)
            raise map_store_error(exc) from exc
        _commit_or_raise(self.db)
        return len(chunks)

    def delete(self, owner_id: str, source_type: str, source_item_id: str) -> int:
        try:
            result = self.db.execute(
                _sql(
                    """
                    DELETE FROM document_chunks
                    WHERE user_id = :user_id AND source_type = :source_type AND source_item_id = :source_item_id
                    """
                ),
                {"user_id": owner_id, "source_type": source_type, "source_item_id": source_item_id},
            )
        except SQLAlchemyError as exc:
            _rollback_quietly(self.db)
            raise map_store_error(exc) from exc
        _commit_or_raise(self.db)
        return int(getattr(result, "rowcount", 0) or 0)

    def delete_all_for_source(self, owner_id: str, source_type: str) -> int:
        """Remove every chunk of a source and reset its watermark in one transaction."""
        try:
            self.db.execute(
                _sql("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
                {"lock_key": _lock_key(owner_id, source_type)},
            )
            result = self.db.execute(
                _sql("DELETE FROM document_chunks WHERE user_id = :user_id AND source_type = :source_type"),
                {"user_id": owner_id, "source_type": source_type},
            )
            self.db.execute(
                _sql(
                    """
                    UPDATE sources
                    SET status = 'disconnected', last_synced_at = NULL
                    WHERE user_id = :user_id AND source_type = :source_type
                    """
                ),
                {"user_id": owner_id, "source_type": source_type},
            )
        except SQLAlchemyError as exc:
            _rollback_quietly(self.db)
            raise map_store_error(exc) from exc
        _commit_or_raise(self.db)
        deleted = int(getattr(result, "rowcount", 0) or 0)
        LOGGER.info("source_chunks_deleted", extra={"source_type": source_type, "deleted": deleted})
        return deleted

    def count_chunks(self, owner_id: str, source_type: str, source_item_id: str) -> int:
        row = self.db.execute(
            _sql(
                """
                SELECT COUNT(*) AS chunk_count
                FROM document_chunks
                WHERE user_id = :user_id AND source_type = :source_type AND source_item_id = :source_item_id
                """
            ),
            {"user_id": owner_id, "source_type": source_type, "source_item_id": source_item_id},
        ).mappings().first()
        return int((row or {}).get("chunk_count") or 0)

    def source_stats(self, owner_id: str) -> dict[str, dict[str, int]]:
        rows = self.db.execute(
            _sql(
                """
                SELECT source_type,
                       COUNT(*) AS chunk_count,
                       COUNT(embedding) AS embedded_count,
                       COUNT(DISTINCT source_item_id) AS item_count
                FROM document_chunks
                WHERE user_id = :user_id
                GROUP BY source_type
                """
            ),
            {"user_id": owner_id},
        ).mappings().all()
        return {
            str(row["source_type"]): {
                "chunks": int(row.get("chunk_count") or 0),
                "embedded": int(row.get("embedded_count") or 0),
                "items": int(row.get("item_count") or 0),
            }
            for row in rows
        }

    def semantic_search(
        self,
        owner_id: str,
        query_embedding: list[float],
        *,
        source_types: list[str],
        limit: int,
        min_similarity: float,
        recency_weight: float,
        recency_decay_seconds: float,
    ) -> list[dict[str, Any]]:
        if len(query_embedding) != self.embedding_dim:
            raise ValidationError(message=f"query embedding has dimension {len(query_embedding)}")
        rows = self.db.execute(
            _sql(
                f"""
                WITH ranked AS (
                    SELECT {_CHUNK_COLUMNS},
                           1 - (embedding <=> CAST(:qvec AS vector)) AS similarity,
                           (1 - (embedding <=> CAST(:qvec AS vector)))
                               * (1.0 + :recency_weight * EXP(-EXTRACT(EPOCH FROM (now() - created_at)) / :decay_seconds))
                               AS combined_score
                    FROM document_chunks
                    WHERE user_id = :user_id
                      AND embedding IS NOT NULL
                      AND source_type = ANY(:source_types)
                    ORDER BY combined_score DESC
                    LIMIT :limit
                )
                SELECT * FROM ranked
                WHERE similarity >= :min_similarity
                ORDER BY combined_score DESC
                """
            ),
            {
                "qvec": self._to_vector_literal(query_embedding),
                "user_id": owner_id,
                "source_types": list(source_types),
                "limit": int(limit),
                "min_similarity": float(min_similarity),
                "recency_weight": float(recency_weight),
                "decay_seconds": float(recency_decay_seconds),
            },
        ).mappings().all()
        return [dict(row) for row in rows]

    def keyword_search(
        self,
        owner_id: str,
        *,
        keywords: list[str],
        source_types: list[str],
        limit: int,
        sender: str | None = None,
    ) -> list[dict[str, Any]]:
        if sender:
            # sender intent only ever matches sender-identifying fields
            statement = f"""
                SELECT {_CHUNK_COLUMNS}
                FROM document_chunks
                WHERE user_id = :user_id
                  AND source_type = 'gmail'
                  AND (
                      metadata->>'fromName' ILIKE :sender_pattern ESCAPE '\\'
                      OR metadata->>'fromEmail' ILIKE :sender_pattern ESCAPE '\\'
                      OR metadata->>'from' ILIKE :sender_pattern ESCAPE '\\'
                  )
                ORDER BY created_at DESC
                LIMIT :limit
            """
            params: dict[str, Any] = {"user_id": owner_id, "sender_pattern": contains_pattern(sender), "limit": int(limit)}
        else:
            if not keywords:
                return []
            statement = f"""
                SELECT {_CHUNK_COLUMNS}
                FROM document_chunks
                WHERE user_id = :user_id
                  AND source_type = ANY(:source_types)
                  AND (
                      chunk_text ILIKE ANY(:patterns)
                      OR title ILIKE ANY(:patterns)
                      OR metadata->>'subject' ILIKE ANY(:patterns)
                      OR metadata->>'fromName' ILIKE ANY(:patterns)
                  )
                ORDER BY created_at DESC
                LIMIT :limit
            """
            params = {
                "user_id": owner_id,
                "source_types": list(source_types),
                # ILIKE ANY takes no ESCAPE clause; backslash is the default escape
                "patterns": [contains_pattern(keyword) for keyword in keywords],
                "limit": int(limit),
            }
        rows = self.db.execute(_sql(statement), params).mappings().all()
        return [dict(row) for row in rows]


__all__ = ["DocumentStore", "StoreTransactionError"]
