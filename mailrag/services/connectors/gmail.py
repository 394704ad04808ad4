from __future__ import annotations

import base64
import binascii
import logging
import re
from email.utils import parsedate_to_datetime
from threading import Lock
from typing import Any
from urllib.parse import quote

from mailrag.core.errors import ProviderApiError
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
from mailrag.services.text_normalizer import clean_text

LOGGER = logging.getLogger(__name__)

_FROM_RE = re.compile(r"^\s*\"?(?P<name>[^\"<]*?)\"?\s*<(?P<email>[^>]+)>\s*$")


def parse_from_header(value: str | None) -> tuple[str | None, str | None]:
    if not value:
        return None, None
    match = _FROM_RE.match(value)
    if match:
        name = match.group("name").strip() or None
        return name, match.group("email").strip()
    if "@" in value:
        return None, value.strip()
    return value.strip(), None


def parse_date_header(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value).isoformat()
    except (TypeError, ValueError, IndexError):
        return None


def decode_base64url(data: str | None) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def extract_body(payload: dict[str, Any] | None) -> str:
    """Prefer text/plain anywhere in the MIME tree, else cleaned text/html."""
    if not payload:
        return ""
    plain = _find_part(payload, "text/plain")
    if plain:
        return plain
    html_body = _find_part(payload, "text/html")
    return clean_text(html_body) if html_body else ""


def _find_part(part: dict[str, Any], mime_type: str) -> str:
    if part.get("mimeType") == mime_type:
        decoded = decode_base64url((part.get("body") or {}).get("data"))
        if decoded.strip():
            return decoded
    for child in part.get("parts") or []:
        found = _find_part(child, mime_type)
        if found:
            return found
    return ""


def headers_of(payload: dict[str, Any] | None) -> dict[str, str]:
    headers: dict[str, str] = {}
    for header in (payload or {}).get("headers") or []:
        name = str(header.get("name") or "").lower()
        if name and name not in headers:
            headers[name] = str(header.get("value") or "")
    return headers


def message_url(message_id: str, thread_id: str | None, owner_email: str | None) -> str:
    if thread_id and owner_email:
        return f"https://mail.google.com/mail/?authuser={quote(owner_email)}#all/{thread_id}"
    if thread_id:
        return f"https://mail.google.com/mail/u/0/#all/{thread_id}"
    return f"https://mail.google.com/mail/u/0/#search/rfc822msgid:{message_id}"


def message_text(subject: str, sender: str, date: str, body: str) -> str:
    return f"Subject: {subject}\nFrom: {sender}\nDate: {date}\n\n{body}"


class GmailConnector:
    source_type = "gmail"
    supports_live_search = True

    def __init__(self, api: GoogleApiClient):
        self.api = api
        self._owner_emails: dict[str, str | None] = {}
        self._lock = Lock()

    def owner_email(self, owner_id: str) -> str | None:
        with self._lock:
            if owner_id in self._owner_emails:
                return self._owner_emails[owner_id]
        try:
            profile = self.api.get_json(owner_id, "users/me/profile")
        except ProviderApiError as exc:
            LOGGER.warning("gmail_profile_unavailable", extra={"error": str(exc)})
            return None
        email = profile.get("emailAddress") or None
        with self._lock:
            self._owner_emails[owner_id] = email
        return email

    def list_items(self, owner_id: str, sync_context: SyncContext) -> list[ItemRef]:
        query = f"in:inbox after:{sync_context.since.strftime('%Y/%m/%d')}"
        refs: list[ItemRef] = []
        page_token: str | None = None
        while len(refs) < sync_context.max_items:
            params: dict[str, Any] = {
                "q": query,
                "maxResults": min(sync_context.page_size, sync_context.max_items - len(refs)),
            }
            if page_token:
                params["pageToken"] = page_token
            body = self.api.get_json(owner_id, "users/me/messages", params)
            for message in body.get("messages") or []:
                refs.append(
                    ItemRef(
                        source_type=self.source_type,
                        item_id=str(message["id"]),
                        metadata={"threadId": message.get("threadId")},
                    )
                )
            page_token = body.get("nextPageToken")
            if not page_token:
                break
        return refs[: sync_context.max_items]

    def fetch_item(self, owner_id: str, ref: ItemRef) -> ConnectorFetchResult:
        try:
            message = self.api.get_json(owner_id, f"users/me/messages/{ref.item_id}", {"format": "full"})
        except ProviderApiError as exc:
            return ConnectorFetchResult(error=ConnectorError(exc.error_code, str(exc), exc.retryable))

        payload = message.get("payload") or {}
        headers = headers_of(payload)
        subject = headers.get("subject") or "No Subject"
        sender = headers.get("from") or "Unknown"
        date = headers.get("date") or ""
        from_name, from_email = parse_from_header(sender)
        thread_id = message.get("threadId") or ref.metadata.get("threadId")
        owner_email = self.owner_email(owner_id)
        body = extract_body(payload)
        if not body.strip():
            body = message.get("snippet") or ""

        metadata = ChunkMetadata(
            from_name=from_name,
            from_email=from_email,
            sender=sender,
            to=headers.get("to"),
            cc=headers.get("cc"),
            subject=subject,
            date=date or None,
            date_iso=parse_date_header(date),
            thread_id=thread_id,
            message_id=ref.item_id,
            owner_email=owner_email,
        )
        return ConnectorFetchResult(
            item=SourceItem(
                source_type=self.source_type,
                item_id=ref.item_id,
                title=subject,
                text=message_text(subject, sender, date, body),
                url=message_url(ref.item_id, thread_id, owner_email),
                metadata=metadata,
            )
        )

    def live_search(self, owner_id: str, query: LiveQuery) -> list[SourceItem]:
        provider_query = query.to_provider_query().strip()
        if not provider_query or query.limit <= 0:
            return []
        listing = self.api.get_json(owner_id, "users/me/messages", {"q": provider_query, "maxResults": query.limit})
        owner_email = self.owner_email(owner_id)
        items: list[SourceItem] = []
        for entry in (listing.get("messages") or [])[: query.limit]:
            message_id = str(entry["id"])
            message = self.api.get_json(
                owner_id,
                f"users/me/messages/{message_id}",
                {"format": "metadata", "metadataHeaders": ["Subject", "From", "Date"]},
            )
            headers = headers_of(message.get("payload"))
            subject = headers.get("subject") or "No Subject"
            sender = headers.get("from") or "Unknown"
            date = headers.get("date") or ""
            from_name, from_email = parse_from_header(sender)
            thread_id = message.get("threadId") or entry.get("threadId")
            items.append(
                SourceItem(
                    source_type=self.source_type,
                    item_id=message_id,
                    title=subject,
                    text=message_text(subject, sender, date, message.get("snippet") or ""),
                    url=message_url(message_id, thread_id, owner_email),
                    metadata=ChunkMetadata(
                        from_name=from_name,
                        from_email=from_email,
                        sender=sender,
                        subject=subject,
                        date=date or None,
                        date_iso=parse_date_header(date),
                        thread_id=thread_id,
                        message_id=message_id,
                        owner_email=owner_email,
                    ),
                )
            )
        return items
