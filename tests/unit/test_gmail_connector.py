import base64
from datetime import datetime, timezone

import pytest

from mailrag.core.errors import ProviderApiError, TokenInvalidError
from mailrag.services.connectors.base import ItemRef, LiveQuery, SyncContext
from mailrag.services.connectors.gmail import GmailConnector, extract_body, parse_from_header, parse_date_header


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


class FakeApi:
    def __init__(self, responses, errors=None):
        self.responses = responses
        self.errors = errors or {}
        self.calls = []

    def get_json(self, owner_id, path, params=None):
        self.calls.append((path, params))
        if path in self.errors:
            raise self.errors[path]
        response = self.responses[path]
        return response.pop(0) if isinstance(response, list) else response


MESSAGE = {
    "id": "m1",
    "threadId": "t1",
    "snippet": "snippet text",
    "payload": {
        "mimeType": "multipart/alternative",
        "headers": [
            {"name": "Subject", "value": "Quarterly review"},
            {"name": "From", "value": '"Priya Sharma" <priya@example.com>'},
            {"name": "To", "value": "me@example.com"},
            {"name": "Date", "value": "Mon, 02 Feb 2026 09:30:00 +0000"},
        ],
        "parts": [
            {"mimeType": "text/html", "body": {"data": _b64("<p>html body</p>")}},
            {"mimeType": "text/plain", "body": {"data": _b64("Plain body text.")}},
        ],
    },
}


def test_parse_from_header_variants():
    assert parse_from_header('"Priya Sharma" <priya@example.com>') == ("Priya Sharma", "priya@example.com")
    assert parse_from_header("priya@example.com") == (None, "priya@example.com")
    assert parse_from_header("Priya") == ("Priya", None)
    assert parse_from_header(None) == (None, None)


def test_parse_date_header_returns_iso():
    assert parse_date_header("Mon, 02 Feb 2026 09:30:00 +0000") == "2026-02-02T09:30:00+00:00"
    assert parse_date_header("garbage") is None


def test_extract_body_prefers_plain_then_html():
    assert extract_body(MESSAGE["payload"]) == "Plain body text."
    html_only = {"mimeType": "text/html", "body": {"data": _b64("<div>Hi&nbsp;there</div>")}}
    assert extract_body(html_only) == "Hi there"


def test_list_items_pages_until_cap():
    api = FakeApi(
        {
            "users/me/messages": [
                {"messages": [{"id": "a", "threadId": "ta"}, {"id": "b", "threadId": "tb"}], "nextPageToken": "p2"},
                {"messages": [{"id": "c", "threadId": "tc"}]},
            ]
        }
    )
    since = datetime(2026, 1, 15, tzinfo=timezone.utc)

    refs = GmailConnector(api).list_items("u1", SyncContext(since=since, max_items=3, page_size=2))

    assert [ref.item_id for ref in refs] == ["a", "b", "c"]
    assert api.calls[0][1]["q"] == "in:inbox after:2026/01/15"
    assert api.calls[1][1]["pageToken"] == "p2"
    assert api.calls[1][1]["maxResults"] == 1


def test_fetch_item_builds_metadata_and_text():
    api = FakeApi({"users/me/messages/m1": MESSAGE, "users/me/profile": {"emailAddress": "me@example.com"}})

    result = GmailConnector(api).fetch_item("u1", ItemRef(source_type="gmail", item_id="m1"))

    item = result.item
    assert result.error is None
    assert item.title == "Quarterly review"
    assert item.text.startswith("Subject: Quarterly review\nFrom: \"Priya Sharma\" <priya@example.com>")
    assert item.text.endswith("Plain body text.")
    assert item.metadata.from_name == "Priya Sharma"
    assert item.metadata.from_email == "priya@example.com"
    assert item.metadata.thread_id == "t1"
    assert item.metadata.owner_email == "me@example.com"
    assert item.metadata.date_iso == "2026-02-02T09:30:00+00:00"
    assert item.url == "https://mail.google.com/mail/?authuser=me%40example.com#all/t1"


def test_fetch_item_provider_error_is_isolated():
    api = FakeApi({}, errors={"users/me/messages/m1": ProviderApiError(message="boom", status_code=500, retryable=True)})

    result = GmailConnector(api).fetch_item("u1", ItemRef(source_type="gmail", item_id="m1"))

    assert result.item is None
    assert result.error.error_code == "PROVIDER_API_ERROR"
    assert result.error.retryable is True


def test_fetch_item_propagates_revoked_token():
    api = FakeApi({}, errors={"users/me/messages/m1": TokenInvalidError(message="invalid_grant")})

    with pytest.raises(TokenInvalidError):
        GmailConnector(api).fetch_item("u1", ItemRef(source_type="gmail", item_id="m1"))


def test_live_search_uses_sender_query():
    api = FakeApi(
        {
            "users/me/messages": {"messages": [{"id": "m1", "threadId": "t1"}]},
            "users/me/messages/m1": MESSAGE,
            "users/me/profile": {"emailAddress": "me@example.com"},
        }
    )

    items = GmailConnector(api).live_search("u1", LiveQuery(sender="Priya", keywords=["review"], limit=5))

    assert api.calls[0] == ("users/me/messages", {"q": 'from:"Priya"', "maxResults": 5})
    assert len(items) == 1
    assert items[0].metadata.from_name == "Priya Sharma"
    assert "snippet text" in items[0].text
