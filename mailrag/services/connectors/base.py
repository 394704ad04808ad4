from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from mailrag.schemas.api import ChunkMetadata


@dataclass(frozen=True)
class ItemRef:
    source_type: str
    item_id: str
    title: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SourceItem:
    source_type: str
    item_id: str
    title: str
    text: str
    url: str | None = None
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)


@dataclass(frozen=True)
class SyncContext:
    since: datetime
    max_items: int
    page_size: int


@dataclass(frozen=True)
class LiveQuery:
    sender: str | None
    keywords: list[str]
    limit: int

    def to_provider_query(self) -> str:
        if self.sender:
            return f'from:"{self.sender}"'
        return " ".join(self.keywords)


@dataclass(frozen=True)
class ConnectorError:
    error_code: str
    message: str
    retryable: bool = False


@dataclass(frozen=True)
class ConnectorFetchResult:
    item: SourceItem | None = None
    error: ConnectorError | None = None


class CredentialProvider(Protocol):
    def get_access_token(self, owner_id: str, provider: str) -> str:
        ...


class SourceConnector(Protocol):
    source_type: str
    supports_live_search: bool

    def list_items(self, owner_id: str, sync_context: SyncContext) -> list[ItemRef]:
        ...

    def fetch_item(self, owner_id: str, ref: ItemRef) -> ConnectorFetchResult:
        ...

    def live_search(self, owner_id: str, query: LiveQuery) -> list[SourceItem]:
        ...
