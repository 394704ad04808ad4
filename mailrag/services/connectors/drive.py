from __future__ import annotations

import io
import logging
from typing import Any

from mailrag.core.errors import ProviderApiError, TokenInvalidError
from mailrag.schemas.api import ChunkMetadata
from mailrag.services.connectors.base import (
    ConnectorError,
    ConnectorFetchResult,
    ItemRef,
    LiveQuery,
    SourceItem,
    SyncContext,
)
from mailrag.services.connectors.google_api import GoogleApiClient

LOGGER = logging.getLogger(__name__)

GOOGLE_DOC_MIME = "application/vnd.google-apps.document"
PLAIN_TEXT_MIME = "text/plain"
PDF_MIME = "application/pdf"
SUPPORTED_MIME_TYPES = (GOOGLE_DOC_MIME, PLAIN_TEXT_MIME, PDF_MIME)


def pdf_to_text(payload: bytes) -> str:
    import pdfplumber

    pages: list[str] = []
    with pdfplumber.open(io.BytesIO(payload)) as pdf:
        for page in pdf.pages:
            page_text = (page.extract_text() or "").strip()
            if page_text:
                pages.append(page_text)
    return "\n\n".join(pages)


class DriveConnector:
    source_type = "drive"
    supports_live_search = False

    def __init__(self, api: GoogleApiClient):
        self.api = api

    def list_items(self, owner_id: str, sync_context: SyncContext) -> list[ItemRef]:
        mime_filter = " or ".join(f"mimeType = '{mime}'" for mime in SUPPORTED_MIME_TYPES)
        query = f"trashed=false and modifiedTime >= '{sync_context.since.strftime('%Y-%m-%d')}' and ({mime_filter})"
        refs: list[ItemRef] = []
        page_token: str | None = None
        while len(refs) < sync_context.max_items:
            params: dict[str, Any] = {
                "q": query,
                "pageSize": min(sync_context.page_size, sync_context.max_items - len(refs)),
                "fields": "nextPageToken, files(id, name, mimeType, webViewLink, modifiedTime)",
                "orderBy": "modifiedTime desc",
            }
            if page_token:
                params["pageToken"] = page_token
            body = self.api.get_json(owner_id, "files", params)
            for entry in body.get("files") or []:
                refs.append(
                    ItemRef(
                        source_type=self.source_type,
                        item_id=str(entry["id"]),
                        title=entry.get("name") or "Untitled",
                        metadata={
                            "mimeType": entry.get("mimeType"),
                            "modifiedTime": entry.get("modifiedTime"),
                            "webViewLink": entry.get("webViewLink"),
                        },
                    )
                )
            page_token = body.get("nextPageToken")
            if not page_token:
                break
        return refs[: sync_context.max_items]

    def _download_text(self, owner_id: str, ref: ItemRef, mime_type: str) -> str | None:
        if mime_type == GOOGLE_DOC_MIME:
            return self.api.get_text(owner_id, f"files/{ref.item_id}/export", {"mimeType": PLAIN_TEXT_MIME})
        if mime_type == PLAIN_TEXT_MIME:
            return self.api.get_text(owner_id, f"files/{ref.item_id}", {"alt": "media"})
        if mime_type == PDF_MIME:
            return pdf_to_text(self.api.get_bytes(owner_id, f"files/{ref.item_id}", {"alt": "media"}))
        return None

    def fetch_item(self, owner_id: str, ref: ItemRef) -> ConnectorFetchResult:
        mime_type = str(ref.metadata.get("mimeType") or "")
        try:
            content = self._download_text(owner_id, ref, mime_type)
        except TokenInvalidError:
            raise
        except ProviderApiError as exc:
            return ConnectorFetchResult(error=ConnectorError(exc.error_code, str(exc), exc.retryable))
        except Exception as exc:  # noqa: BLE001
            return ConnectorFetchResult(error=ConnectorError("EXTRACTION_FAILED", f"{type(exc).__name__}: {exc}"))
        if content is None:
            return ConnectorFetchResult(error=ConnectorError("UNSUPPORTED_MIME_TYPE", f"Skipping {mime_type or 'unknown'}"))

        title = ref.title or "Untitled"
        return ConnectorFetchResult(
            item=SourceItem(
                source_type=self.source_type,
                item_id=ref.item_id,
                title=title,
                text=content,
                url=ref.metadata.get("webViewLink"),
                metadata=ChunkMetadata(
                    mime_type=mime_type or None,
                    modified_time=ref.metadata.get("modifiedTime"),
                    web_view_link=ref.metadata.get("webViewLink"),
                ),
            )
        )

    def live_search(self, owner_id: str, query: LiveQuery) -> list[SourceItem]:
        return []
