from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event, Lock
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from mailrag.clients.ollama_client import OllamaClient
from mailrag.core.errors import (
    EMBEDDINGS_DEGRADED_WARNING,
    PARTIAL_EMBEDDINGS_WARNING,
    RECONNECT_MESSAGE,
    ProviderApiError,
    TokenInvalidError,
)
from mailrag.core.logging import log_event
from mailrag.db.document_store import DocumentStore
from mailrag.db.errors import StoreTransactionError, _commit_or_raise, map_store_error
from mailrag.db.repositories.source_watermark import SourceWatermarkRepository, effective_since
from mailrag.db.session import session_scope
from mailrag.schemas.api import IngestSummary
from mailrag.services.chunker import ChunkingOptions, chunk_text
from mailrag.services.connectors.base import ItemRef, SourceConnector, SyncContext
from mailrag.services.connectors.registry import ConnectorRegistry

LOGGER = logging.getLogger(__name__)


@dataclass
class _SummaryAccumulator:
    processed: int = 0
    skipped: int = 0
    embedded: int = 0
    inserted: int = 0
    warnings: list[str] = field(default_factory=list)
    lock: Lock = field(default_factory=Lock)

    def record_stored(self, inserted: int, embedded: int) -> None:
        with self.lock:
            self.processed += 1
            self.inserted += inserted
            self.embedded += embedded

    def record_skip(self, warning: str | None = None) -> None:
        with self.lock:
            self.skipped += 1
            self._add_warning(warning)

    def record_warning(self, warning: str) -> None:
        with self.lock:
            self._add_warning(warning)

    def _add_warning(self, warning: str | None) -> None:
        if warning and warning not in self.warnings:
            self.warnings.append(warning)


def _load_settings():
    from mailrag.core.config import settings

    return settings


def _default_caps() -> dict[str, tuple[int, int]]:
    settings = _load_settings()
    return {
        "gmail": (settings.GMAIL_MAX_ITEMS, settings.GMAIL_PAGE_SIZE),
        "drive": (settings.DRIVE_MAX_ITEMS, settings.DRIVE_PAGE_SIZE),
    }


class IngestionOrchestrator:
    def __init__(
        self,
        *,
        registry: ConnectorRegistry,
        embedder: OllamaClient,
        session_factory: Callable[[], Any] | None = None,
        chunking: ChunkingOptions | None = None,
        lookback_days: int | None = None,
        workers: int | None = None,
        caps: dict[str, tuple[int, int]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        settings = _load_settings()
        self.registry = registry
        self.embedder = embedder
        self.session_factory = session_factory
        self.chunking = chunking or ChunkingOptions.from_settings()
        self.lookback_days = int(lookback_days or settings.SYNC_LOOKBACK_DAYS)
        self.workers = max(1, int(workers or settings.INGEST_WORKERS))
        self.caps = caps or _default_caps()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def ingest(self, owner_id: str, source_type: str) -> IngestSummary:
        connector = self.registry.get(source_type)
        started = time.perf_counter()
        run_started_at = self._clock()
        log_event("ingest.started", payload={"source_type": source_type}, owner_id=owner_id)

        accumulator = _SummaryAccumulator()
        embeddings_enabled = self.embedder.is_available()
        if not embeddings_enabled:
            accumulator.warnings.append(EMBEDDINGS_DEGRADED_WARNING)

        try:
            with session_scope(self.session_factory) as db:
                watermark = SourceWatermarkRepository(db).get(owner_id, source_type)
        except SQLAlchemyError as exc:
            raise map_store_error(exc) from exc
        since = effective_since(watermark, lookback_days=self.lookback_days, now=run_started_at)

        max_items, page_size = self.caps.get(source_type, (100, 100))
        sync_context = SyncContext(since=since, max_items=max_items, page_size=page_size)
        try:
            refs = connector.list_items(owner_id, sync_context)
        except TokenInvalidError:
            return self._reconnect_required(owner_id, source_type, since, accumulator)
        except ProviderApiError as exc:
            LOGGER.warning("ingest_list_failed", extra={"source_type": source_type, "error_code": exc.error_code})
            accumulator.warnings.append(f"Could not list {source_type} items: {exc}")
            return self._summary(source_type, since, accumulator, error_code=exc.error_code)

        token_revoked = Event()

        def run_item(ref: ItemRef) -> None:
            if token_revoked.is_set():
                accumulator.record_skip()
                return
            try:
                self._ingest_item(owner_id, connector, ref, embeddings_enabled, accumulator)
            except TokenInvalidError:
                token_revoked.set()
                accumulator.record_skip()
            except StoreTransactionError as exc:
                LOGGER.warning(
                    "ingest_item_store_failed",
                    extra={"item_id": ref.item_id, "error_code": exc.error_code, "sqlstate": exc.sqlstate},
                )
                accumulator.record_skip(f"Storage error ({exc.error_code}); some items were not indexed.")
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("ingest_item_failed", extra={"item_id": ref.item_id, "error": f"{type(exc).__name__}: {exc}"})
                accumulator.record_skip()

        if self.workers == 1:
            for ref in refs:
                run_item(ref)
        else:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="ingest") as pool:
                list(pool.map(run_item, refs))

        if token_revoked.is_set():
            return self._reconnect_required(owner_id, source_type, since, accumulator)

        with session_scope(self.session_factory) as db:
            SourceWatermarkRepository(db).advance(owner_id, source_type, run_started_at)
            _commit_or_raise(db)

        summary = self._summary(source_type, since, accumulator)
        log_event(
            "ingest.completed",
            payload={
                "source_type": source_type,
                "listed": len(refs),
                "processed": summary.processed,
                "skipped": summary.skipped,
                "embedded": summary.embedded,
                "inserted": summary.inserted,
                "took_ms": int((time.perf_counter() - started) * 1000),
            },
            owner_id=owner_id,
        )
        return summary

    def _ingest_item(
        self,
        owner_id: str,
        connector: SourceConnector,
        ref: ItemRef,
        embeddings_enabled: bool,
        accumulator: _SummaryAccumulator,
    ) -> None:
        result = connector.fetch_item(owner_id, ref)
        if result.error is not None or result.item is None:
            reason = result.error.error_code if result.error else "EMPTY_ITEM"
            LOGGER.info("ingest_item_skipped", extra={"item_id": ref.item_id, "reason": reason})
            accumulator.record_skip()
            return

        item = result.item
        chunks = chunk_text(item.text, self.chunking)
        if not chunks:
            LOGGER.info("ingest_item_skipped", extra={"item_id": ref.item_id, "reason": "NO_CHUNKS"})
            accumulator.record_skip()
            return

        texts = [chunk.text for chunk in chunks]
        embeddings: list[list[float] | None] = [None] * len(texts)
        if embeddings_enabled:
            embeddings = [self.embedder.embed(chunk, log_key=item.item_id) for chunk in texts]
        embedded = sum(1 for vector in embeddings if vector is not None)

        with session_scope(self.session_factory) as db:
            inserted = DocumentStore(db).upsert(
                owner_id,
                item.source_type,
                item.item_id,
                item.title,
                item.url,
                texts,
                embeddings,
                item.metadata,
            )
        accumulator.record_stored(inserted, embedded)
        if embeddings_enabled and embedded < len(texts):
            LOGGER.warning(
                "ingest_item_partially_embedded",
                extra={"item_id": item.item_id, "chunks": len(texts), "embedded": embedded},
            )
            accumulator.record_warning(PARTIAL_EMBEDDINGS_WARNING)

    def _reconnect_required(
        self,
        owner_id: str,
        source_type: str,
        since: datetime,
        accumulator: _SummaryAccumulator,
    ) -> IngestSummary:
        LOGGER.warning("ingest_token_invalid", extra={"source_type": source_type})
        with session_scope(self.session_factory) as db:
            SourceWatermarkRepository(db).mark_disconnected(owner_id, source_type)
            _commit_or_raise(db)
        accumulator.warnings.append(RECONNECT_MESSAGE)
        summary = self._summary(
            source_type, since, accumulator, error_code=TokenInvalidError.default_code, reconnect_required=True
        )
        log_event("ingest.reconnect_required", level=logging.WARNING, payload={"source_type": source_type}, owner_id=owner_id)
        return summary

    @staticmethod
    def _summary(
        source_type: str,
        since: datetime,
        accumulator: _SummaryAccumulator,
        *,
        error_code: str | None = None,
        reconnect_required: bool = False,
    ) -> IngestSummary:
        return IngestSummary(
            source_type=source_type,
            processed=accumulator.processed,
            skipped=accumulator.skipped,
            embedded=accumulator.embedded,
            inserted=accumulator.inserted,
            warnings=list(accumulator.warnings),
            since=since.isoformat(),
            error_code=error_code,
            reconnect_required=reconnect_required,
        )
