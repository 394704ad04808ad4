from __future__ import annotations

import logging
import uuid
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from mailrag.clients.backend_resolver import BackendResolver
from mailrag.clients.ollama_client import OllamaClient
from mailrag.core.config import settings
from mailrag.core.errors import ValidationError
from mailrag.core.logging import clear_request_context, log_event, set_request_context
from mailrag.db.document_store import DocumentStore
from mailrag.db.errors import StoreTransactionError
from mailrag.db.session import session_scope
from mailrag.schemas.api import AnswerResult, IngestSummary
from mailrag.services.answer import AnswerSynthesizer
from mailrag.services.connectors import build_google_registry
from mailrag.services.connectors.base import CredentialProvider
from mailrag.services.connectors.registry import ConnectorRegistry
from mailrag.services.ingestion import IngestionOrchestrator
from mailrag.services.intent import analyze_question
from mailrag.services.retrieval import HybridRetriever

LOGGER = logging.getLogger(__name__)

NOTHING_INDEXED_MESSAGE = (
    "No sources are connected yet, or nothing has been indexed. Connect Gmail or Drive and run a sync first."
)


class RagCore:
    """Process-wide entry point: one instance shares the backend resolver, caches and connection pool."""

    def __init__(
        self,
        credentials: CredentialProvider | None = None,
        *,
        registry: ConnectorRegistry | None = None,
        resolver: BackendResolver | None = None,
        embedder: OllamaClient | None = None,
        session_factory: Callable[[], Any] | None = None,
    ):
        if registry is None:
            if credentials is None:
                raise ValidationError(message="credentials or registry is required")
            registry = build_google_registry(credentials)
        self.registry = registry
        self.resolver = resolver or BackendResolver()
        self.embedder = embedder or OllamaClient(self.resolver)
        self.session_factory = session_factory
        self.orchestrator = IngestionOrchestrator(
            registry=self.registry,
            embedder=self.embedder,
            session_factory=session_factory,
        )
        self.retriever = HybridRetriever(
            embedder=self.embedder,
            registry=self.registry,
            session_factory=session_factory,
        )
        self.synthesizer = AnswerSynthesizer(self.embedder)

    def ingest(self, owner_id: str, source_type: str) -> IngestSummary:
        _require(owner_id, "owner_id")
        set_request_context(request_id=str(uuid.uuid4()), owner_id=owner_id)
        try:
            return self.orchestrator.ingest(owner_id, source_type)
        finally:
            clear_request_context()

    def answer_question(self, owner_id: str, question: str) -> AnswerResult:
        _require(owner_id, "owner_id")
        _require(question, "question")
        set_request_context(request_id=str(uuid.uuid4()), owner_id=owner_id)
        try:
            intent = analyze_question(question.strip(), settings.RAG_MAX_KEYWORDS)
            candidates = self.retriever.search(owner_id, intent.question, intent)
            if not candidates and not self._has_indexed_chunks(owner_id):
                result = AnswerResult(answer=NOTHING_INDEXED_MESSAGE, no_results_message=NOTHING_INDEXED_MESSAGE)
            else:
                result = self.synthesizer.synthesize(intent.question, candidates, intent.person_name)
            log_event(
                "query.answered",
                payload={
                    "candidates": len(candidates),
                    "citations": len(result.citations),
                    "degraded": result.degraded,
                    "no_results": result.no_results_message is not None,
                },
                owner_id=owner_id,
            )
            return result
        finally:
            clear_request_context()

    def disconnect_source(self, owner_id: str, source_type: str) -> int:
        _require(owner_id, "owner_id")
        self.registry.get(source_type)
        with session_scope(self.session_factory) as db:
            deleted = DocumentStore(db).delete_all_for_source(owner_id, source_type)
        log_event("source.disconnected", payload={"source_type": source_type, "deleted": deleted}, owner_id=owner_id)
        return deleted

    def backend_status(self) -> dict[str, Any]:
        return {
            "available": self.resolver.is_available(),
            "resolver": self.resolver.debug_info(),
            "client": self.embedder.debug_info(),
            "sources": self.registry.list_registered(),
        }

    def shutdown(self) -> None:
        self.embedder.shutdown()
        self.resolver.shutdown()

    def _has_indexed_chunks(self, owner_id: str) -> bool:
        try:
            with session_scope(self.session_factory) as db:
                stats = DocumentStore(db).source_stats(owner_id)
        except (SQLAlchemyError, StoreTransactionError) as exc:
            LOGGER.warning("source_stats_failed", extra={"error": f"{type(exc).__name__}: {exc}"})
            return True
        return any(entry.get("chunks", 0) > 0 for entry in stats.values())


def _require(value: str | None, name: str) -> None:
    if not value or not str(value).strip():
        raise ValidationError(message=f"{name} must be a non-empty string")
