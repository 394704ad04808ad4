from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from mailrag.clients.ollama_client import OllamaClient
from mailrag.db.document_store import DocumentStore
from mailrag.db.session import session_scope
from mailrag.schemas.api import ChunkMetadata
from mailrag.services.connectors.base import LiveQuery, SourceItem
from mailrag.services.connectors.registry import ConnectorRegistry
from mailrag.services.intent import QueryIntent, analyze_question

LOGGER = logging.getLogger(__name__)

SEMANTIC = "semantic"
KEYWORD = "keyword"
LIVE = "live"
_PROVENANCE_RANK = {SEMANTIC: 0, KEYWORD: 1, LIVE: 2}
MIN_DEDUP_TEXT_CHARS = 20


@dataclass
class RetrievedCandidate:
    source_type: str
    source_item_id: str
    chunk_index: int
    text: str
    retrieval: str
    title: str | None = None
    url: str | None = None
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    created_at: datetime | None = None
    similarity: float | None = None
    score: float = 0.0
    boosts: list[str] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.source_type, self.source_item_id, self.chunk_index)

    @classmethod
    def from_row(cls, row: dict[str, Any], retrieval: str) -> "RetrievedCandidate":
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        similarity = row.get("similarity")
        combined = row.get("combined_score")
        return cls(
            source_type=str(row.get("source_type")),
            source_item_id=str(row.get("source_item_id")),
            chunk_index=int(row.get("chunk_index") or 0),
            text=str(row.get("chunk_text") or ""),
            retrieval=retrieval,
            title=row.get("title"),
            url=row.get("url"),
            metadata=ChunkMetadata.model_validate(metadata),
            created_at=row.get("created_at"),
            similarity=None if similarity is None else float(similarity),
            score=float(combined if combined is not None else (similarity or 0.0)),
        )

    @classmethod
    def from_live_item(cls, item: SourceItem) -> "RetrievedCandidate":
        return cls(
            source_type=item.source_type,
            source_item_id=item.item_id,
            chunk_index=0,
            text=item.text,
            retrieval=LIVE,
            title=item.title,
            url=item.url,
            metadata=item.metadata,
        )


def _prefer(current: RetrievedCandidate, challenger: RetrievedCandidate) -> RetrievedCandidate:
    """Highest score wins; on an exact tie the earlier provenance (semantic first) is kept."""
    if challenger.score > current.score:
        return challenger
    if challenger.score == current.score and _PROVENANCE_RANK[challenger.retrieval] < _PROVENANCE_RANK[current.retrieval]:
        return challenger
    return current


def merge_candidates(candidates: list[RetrievedCandidate]) -> list[RetrievedCandidate]:
    by_key: dict[tuple[str, str, int], RetrievedCandidate] = {}
    order: list[tuple[str, str, int]] = []
    for candidate in candidates:
        existing = by_key.get(candidate.key)
        if existing is None:
            by_key[candidate.key] = candidate
            order.append(candidate.key)
        else:
            by_key[candidate.key] = _prefer(existing, candidate)
    return [by_key[key] for key in order]


def dedupe_texts(candidates: list[RetrievedCandidate], min_chars: int = MIN_DEDUP_TEXT_CHARS) -> list[RetrievedCandidate]:
    seen: set[str] = set()
    kept: list[RetrievedCandidate] = []
    for candidate in candidates:
        body = " ".join(candidate.text.split()).lower()
        if len(body) < min_chars or body in seen:
            continue
        seen.add(body)
        kept.append(candidate)
    return kept


def apply_name_boost(candidate: RetrievedCandidate, name: str, sender_boost: float) -> None:
    needle = name.lower()
    metadata = candidate.metadata
    tiers = (
        ("fromName", metadata.from_name, sender_boost),
        ("from", metadata.sender, sender_boost),
        ("author", metadata.author, sender_boost),
        ("subject", metadata.subject, 1.2),
        ("to", metadata.to, 1.1),
        ("cc", metadata.cc, 1.1),
    )
    for field_name, value, multiplier in tiers:
        if value and needle in value.lower():
            candidate.score *= multiplier
            candidate.boosts.append(f"name:{field_name}")
            return


class HybridRetriever:
    def __init__(
        self,
        *,
        embedder: OllamaClient,
        registry: ConnectorRegistry | None = None,
        session_factory: Callable[[], Any] | None = None,
        k: int | None = None,
        min_similarity: float | None = None,
        min_chunk_chars: int | None = None,
        keyword_limit: int | None = None,
        max_keywords: int | None = None,
        live_limit: int | None = None,
        recency_weight: float | None = None,
        recency_decay_days: float | None = None,
        name_boost: float | None = None,
    ):
        from mailrag.core.config import settings

        self.embedder = embedder
        self.registry = registry
        self.session_factory = session_factory
        self.k = int(k or settings.RAG_SEARCH_K)
        self.min_similarity = float(settings.RAG_MIN_SIMILARITY if min_similarity is None else min_similarity)
        self.min_chunk_chars = int(settings.RAG_MIN_CHUNK_CHARS if min_chunk_chars is None else min_chunk_chars)
        self.keyword_limit = int(keyword_limit or settings.RAG_KEYWORD_LIMIT)
        self.max_keywords = int(max_keywords or settings.RAG_MAX_KEYWORDS)
        self.live_limit = int(settings.GMAIL_LIVE_FALLBACK_MAX if live_limit is None else live_limit)
        self.recency_weight = float(settings.RAG_RECENCY_WEIGHT if recency_weight is None else recency_weight)
        self.recency_decay_seconds = float(recency_decay_days or settings.RAG_RECENCY_DECAY_DAYS) * 86400.0
        self.name_boost = float(name_boost or settings.RAG_NAME_BOOST)

    def search(self, owner_id: str, question: str, intent: QueryIntent | None = None) -> list[RetrievedCandidate]:
        intent = intent or analyze_question(question, self.max_keywords)
        stages = (
            (SEMANTIC, self._semantic_stage),
            (KEYWORD, self._keyword_stage),
            (LIVE, self._live_stage),
        )
        for name, stage in stages:
            started = time.perf_counter()
            try:
                found = stage(owner_id, intent)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("retrieval_stage_failed", extra={"stage": name, "error": f"{type(exc).__name__}: {exc}"})
                found = []
            results = dedupe_texts(merge_candidates(found))[: self.k]
            LOGGER.info(
                "retrieval_stage_completed",
                extra={"stage": name, "count": len(results), "took_ms": int((time.perf_counter() - started) * 1000)},
            )
            if results:
                return results
        return []

    def _semantic_stage(self, owner_id: str, intent: QueryIntent) -> list[RetrievedCandidate]:
        query_embedding = self.embedder.embed(intent.question, log_key="query")
        if query_embedding is None:
            return []
        with session_scope(self.session_factory) as db:
            rows = DocumentStore(db).semantic_search(
                owner_id,
                query_embedding,
                source_types=intent.source_types,
                limit=self.k * 3,
                min_similarity=self.min_similarity,
                recency_weight=self.recency_weight,
                recency_decay_seconds=self.recency_decay_seconds,
            )
        candidates = [RetrievedCandidate.from_row(row, SEMANTIC) for row in rows]
        candidates = [c for c in candidates if len(c.text.strip()) >= self.min_chunk_chars]
        boost_name = intent.sender.value if intent.sender and intent.sender.type == "name" else intent.person_name
        if boost_name:
            for candidate in candidates:
                apply_name_boost(candidate, boost_name, self.name_boost)
        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates

    def _keyword_stage(self, owner_id: str, intent: QueryIntent) -> list[RetrievedCandidate]:
        sender = intent.sender.value if intent.sender else None
        if not sender and not intent.keywords:
            return []
        with session_scope(self.session_factory) as db:
            rows = DocumentStore(db).keyword_search(
                owner_id,
                keywords=intent.keywords,
                source_types=intent.source_types,
                limit=self.keyword_limit,
                sender=sender,
            )
        return [RetrievedCandidate.from_row(row, KEYWORD) for row in rows]

    def _live_stage(self, owner_id: str, intent: QueryIntent) -> list[RetrievedCandidate]:
        if self.registry is None or self.live_limit <= 0:
            return []
        query = LiveQuery(
            sender=intent.sender.value if intent.sender else None,
            keywords=intent.keywords,
            limit=self.live_limit,
        )
        if not query.to_provider_query().strip():
            return []
        candidates: list[RetrievedCandidate] = []
        for connector in self.registry.live_capable(intent.source_types):
            try:
                items = connector.live_search(owner_id, query)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning(
                    "live_search_failed",
                    extra={"source_type": connector.source_type, "error": f"{type(exc).__name__}: {exc}"},
                )
                continue
            candidates.extend(RetrievedCandidate.from_live_item(item) for item in items)
        return candidates
