from __future__ import annotations

from mailrag.core.errors import UnknownSourceTypeError
from mailrag.services.connectors.base import SourceConnector


class ConnectorRegistry:
    def __init__(self) -> None:
        self._connectors: dict[str, SourceConnector] = {}

    def register(self, connector: SourceConnector) -> None:
        self._connectors[connector.source_type] = connector

    def get(self, source_type: str) -> SourceConnector:
        connector = self._connectors.get(source_type)
        if connector is None:
            raise UnknownSourceTypeError(message=f"Unknown source_type: {source_type}")
        return connector

    def live_capable(self, source_types: list[str]) -> list[SourceConnector]:
        return [
            self._connectors[source_type]
            for source_type in source_types
            if source_type in self._connectors and self._connectors[source_type].supports_live_search
        ]

    def list_registered(self) -> list[str]:
        return sorted(self._connectors.keys())
