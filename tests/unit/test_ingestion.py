from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

pytest.importorskip("sqlalchemy")

from sqlalchemy.exc import OperationalError

from mailrag.core.errors import (
    EMBEDDINGS_DEGRADED_WARNING,
    PARTIAL_EMBEDDINGS_WARNING,
    RECONNECT_MESSAGE,
    ProviderApiError,
    TokenInvalidError,
)
from mailrag.db.errors import StoreTransactionError
from mailrag.schemas.api import ChunkMetadata
from mailrag.services.chunker import ChunkingOptions
from mailrag.services.connectors.base import ConnectorError, ConnectorFetchResult, ItemRef, SourceItem
from mailrag.services.connectors.registry import ConnectorRegistry
from mailrag.services.ingestion import IngestionOrchestrator

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
OPTIONS = ChunkingOptions(target_words=20, min_words=10, max_words=30, overlap_words=5)


class FakeResult:
    def __init__(self, rows=None):
        self.rows = rows or []

    def mappings(self):
        return self

    def first(self):
        return self.rows[0] if self.rows else None


class FakeDatabase:
    """Shared state behind every session the orchestrator opens."""

    def __init__(self, watermark=None, fail_items=(), fail_watermark_read=False):
        self.watermark = watermark
        self.fail_items = set(fail_items)
        self.fail_watermark_read = fail_watermark_read
        self.chunks = {}
        self.status = None
        self.advanced_to = None

    def session(self):
        return FakeSession(self)


class FakeSession:
    def __init__(self, database):
        self.database = database
        self.pending = {}

    def execute(self, statement, params=None):
        sql = " ".join(str(statement).split())
        params = params or {}
        if sql.startswith("SELECT user_id, source_type, status, last_synced_at FROM sources"):
            if self.database.fail_watermark_read:
                raise OperationalError("select", params, SimpleNamespace(sqlstate="08006"))
            if self.database.watermark is None:
                return FakeResult()
            return FakeResult(
                [{"user_id": "u1", "source_type": params["source_type"], "status": "connected", "last_synced_at": self.database.watermark}]
            )
        if sql.startswith("INSERT INTO sources"):
            self.database.advanced_to = params["last_synced_at"]
            self.database.status = "connected"
        elif sql.startswith("UPDATE sources SET status = 'disconnected'"):
            self.database.status = "disconnected"
        elif sql.startswith("INSERT INTO document_chunks"):
            if params["source_item_id"] in self.database.fail_items:
                raise OperationalError("insert", params, SimpleNamespace(sqlstate="57014"))
            self.pending.setdefault(params["source_item_id"], []).append(params)
        elif sql.startswith("DELETE FROM document_chunks"):
            self.database.chunks.pop(params["source_item_id"], None)
        return FakeResult()

    def commit(self):
        self.database.chunks.update(self.pending)
        self.pending = {}

    def rollback(self):
        self.pending = {}

    def close(self):
        return None


class FakeEmbedder:
    def __init__(self, available=True, dim=3, fail_embed=False):
        self.available = available
        self.dim = dim
        self.fail_embed = fail_embed
        self.calls = 0

    def is_available(self):
        return self.available

    def embed(self, text, *, log_key=None):
        self.calls += 1
        if self.fail_embed or not self.available:
            return None
        return [0.1] * self.dim


class FakeConnector:
    source_type = "gmail"
    supports_live_search = True

    def __init__(self, items, list_error=None, fetch_errors=None):
        self.items = items
        self.list_error = list_error
        self.fetch_errors = fetch_errors or {}
        self.sync_context = None

    def list_items(self, owner_id, sync_context):
        self.sync_context = sync_context
        if self.list_error:
            raise self.list_error
        return [ItemRef(source_type="gmail", item_id=item_id) for item_id in self.items]

    def fetch_item(self, owner_id, ref):
        error = self.fetch_errors.get(ref.item_id)
        if isinstance(error, Exception):
            raise error
        if error:
            return ConnectorFetchResult(error=ConnectorError(error, "failed"))
        return ConnectorFetchResult(
            item=SourceItem(
                source_type="gmail",
                item_id=ref.item_id,
                title=f"Subject {ref.item_id}",
                text=self.items[ref.item_id],
                metadata=ChunkMetadata(subject=f"Subject {ref.item_id}"),
            )
        )

    def live_search(self, owner_id, query):
        return []


def _text(words: int) -> str:
    return " ".join(f"w{i}." for i in range(words))


def _orchestrator(connector, database, embedder=None, workers=1):
    registry = ConnectorRegistry()
    registry.register(connector)
    return IngestionOrchestrator(
        registry=registry,
        embedder=embedder or FakeEmbedder(),
        session_factory=database.session,
        chunking=OPTIONS,
        lookback_days=180,
        workers=workers,
        caps={"gmail": (500, 200)},
        clock=lambda: NOW,
    )


def test_ingest_counts_items_and_advances_watermark(monkeypatch):
    monkeypatch.setattr("mailrag.db.document_store.DocumentStore.__init__", _store_init)
    database = FakeDatabase()
    connector = FakeConnector({"m1": _text(15), "m2": _text(8)})

    summary = _orchestrator(connector, database).ingest("u1", "gmail")

    assert summary.processed == 2
    assert summary.skipped == 0
    assert summary.inserted == summary.embedded == 2
    assert summary.warnings == []
    assert summary.since == "2025-09-02T12:00:00+00:00"
    assert database.advanced_to == NOW
    assert set(database.chunks) == {"m1", "m2"}
    assert connector.sync_context.max_items == 500


def test_ingest_without_embeddings_stores_null_vectors_and_warns(monkeypatch):
    monkeypatch.setattr("mailrag.db.document_store.DocumentStore.__init__", _store_init)
    database = FakeDatabase()
    embedder = FakeEmbedder(available=False)

    summary = _orchestrator(FakeConnector({"m1": _text(12)}), database, embedder).ingest("u1", "gmail")

    assert summary.processed == 1
    assert summary.embedded == 0
    assert summary.inserted == 1
    assert summary.warnings == [EMBEDDINGS_DEGRADED_WARNING]
    assert embedder.calls == 0
    assert database.chunks["m1"][0]["embedding"] is None


def test_reachable_backend_that_fails_to_embed_still_warns(monkeypatch):
    monkeypatch.setattr("mailrag.db.document_store.DocumentStore.__init__", _store_init)
    database = FakeDatabase()
    embedder = FakeEmbedder(fail_embed=True)

    summary = _orchestrator(FakeConnector({"m1": _text(12), "m2": _text(12)}), database, embedder, workers=2).ingest(
        "u1", "gmail"
    )

    assert summary.processed == 2
    assert summary.embedded == 0
    assert summary.inserted == 2
    assert summary.warnings == [PARTIAL_EMBEDDINGS_WARNING]
    assert embedder.calls == 2
    assert database.advanced_to == NOW


def test_watermark_read_failure_surfaces_store_error(monkeypatch):
    monkeypatch.setattr("mailrag.db.document_store.DocumentStore.__init__", _store_init)
    connector = FakeConnector({"m1": _text(12)})

    with pytest.raises(StoreTransactionError) as exc:
        _orchestrator(connector, FakeDatabase(fail_watermark_read=True)).ingest("u1", "gmail")

    assert exc.value.error_code == "connection_failure"
    assert connector.sync_context is None


def test_failed_items_are_skipped_without_aborting_batch(monkeypatch):
    monkeypatch.setattr("mailrag.db.document_store.DocumentStore.__init__", _store_init)
    database = FakeDatabase(fail_items={"m3"})
    connector = FakeConnector(
        {"m1": _text(12), "m2": _text(12), "m3": _text(12), "m4": "   ", "m5": _text(12)},
        fetch_errors={"m2": "PROVIDER_API_ERROR", "m5": RuntimeError("parser exploded")},
    )

    summary = _orchestrator(connector, database, workers=3).ingest("u1", "gmail")

    assert summary.processed == 1
    assert summary.skipped == 4
    assert any("Storage error (query_canceled)" in warning for warning in summary.warnings)
    assert set(database.chunks) == {"m1"}
    assert database.advanced_to == NOW


def test_existing_watermark_bounds_listing(monkeypatch):
    monkeypatch.setattr("mailrag.db.document_store.DocumentStore.__init__", _store_init)
    watermark = datetime(2026, 2, 20, tzinfo=timezone.utc)
    connector = FakeConnector({})

    summary = _orchestrator(connector, FakeDatabase(watermark=watermark)).ingest("u1", "gmail")

    assert connector.sync_context.since == watermark
    assert summary.since == watermark.isoformat()


def test_revoked_token_while_listing_requires_reconnect(monkeypatch):
    monkeypatch.setattr("mailrag.db.document_store.DocumentStore.__init__", _store_init)
    database = FakeDatabase()
    connector = FakeConnector({}, list_error=TokenInvalidError(message="invalid_grant"))

    summary = _orchestrator(connector, database).ingest("u1", "gmail")

    assert summary.reconnect_required is True
    assert summary.error_code == "TOKEN_INVALID"
    assert RECONNECT_MESSAGE in summary.warnings
    assert database.status == "disconnected"
    assert database.advanced_to is None


def test_revoked_token_mid_batch_stops_remaining_items(monkeypatch):
    monkeypatch.setattr("mailrag.db.document_store.DocumentStore.__init__", _store_init)
    database = FakeDatabase()
    connector = FakeConnector(
        {"m1": _text(12), "m2": _text(12), "m3": _text(12)},
        fetch_errors={"m2": TokenInvalidError(message="revoked")},
    )

    summary = _orchestrator(connector, database).ingest("u1", "gmail")

    assert summary.reconnect_required is True
    assert summary.processed == 1
    assert summary.skipped == 2
    assert database.advanced_to is None


def test_listing_failure_returns_summary_without_advancing(monkeypatch):
    monkeypatch.setattr("mailrag.db.document_store.DocumentStore.__init__", _store_init)
    database = FakeDatabase()
    connector = FakeConnector({}, list_error=ProviderApiError(message="HTTP 503", status_code=503, retryable=True))

    summary = _orchestrator(connector, database).ingest("u1", "gmail")

    assert summary.error_code == "PROVIDER_API_ERROR"
    assert summary.processed == 0
    assert summary.warnings
    assert database.advanced_to is None


def test_unknown_source_type_is_rejected():
    from mailrag.core.errors import UnknownSourceTypeError

    with pytest.raises(UnknownSourceTypeError):
        _orchestrator(FakeConnector({}), FakeDatabase()).ingest("u1", "dropbox")


def _store_init(self, db, embedding_dim=None):
    self.db = db
    self.embedding_dim = 3
