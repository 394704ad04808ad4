from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChunkMetadata(BaseModel):
    """Well-known chunk metadata plus an open ``extra`` map.

    Stored as JSON with camelCase keys so SQL can filter on ``metadata->>'fromName'``.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_name: str | None = Field(default=None, alias="fromName")
    from_email: str | None = Field(default=None, alias="fromEmail")
    sender: str | None = Field(default=None, alias="from")
    to: str | None = None
    cc: str | None = None
    subject: str | None = None
    date: str | None = None
    date_iso: str | None = Field(default=None, alias="dateISO")
    thread_id: str | None = Field(default=None, alias="threadId")
    message_id: str | None = Field(default=None, alias="gmailMessageId")
    owner_email: str | None = Field(default=None, alias="ownerEmail")
    mime_type: str | None = Field(default=None, alias="mimeType")
    modified_time: str | None = Field(default=None, alias="modifiedTime")
    author: str | None = None
    web_view_link: str | None = Field(default=None, alias="webViewLink")
    extra: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def collect_unknown_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known: set[str] = set()
        for name, field in cls.model_fields.items():
            known.add(name)
            if field.alias:
                known.add(field.alias)
        extra = dict(data.get("extra") or {})
        cleaned: dict[str, Any] = {}
        for key, value in data.items():
            if key == "extra":
                continue
            if key in known:
                cleaned[key] = None if value is None else str(value)
            else:
                extra[key] = value
        cleaned["extra"] = extra
        return cleaned

    def to_json(self) -> dict[str, Any]:
        payload = self.model_dump(by_alias=True, exclude_none=True, exclude={"extra"})
        for key, value in self.extra.items():
            payload.setdefault(key, value)
        return payload

    def get(self, key: str, default: Any = None) -> Any:
        return self.to_json().get(key, default)


class IngestSummary(BaseModel):
    source_type: str
    processed: int = 0
    skipped: int = 0
    embedded: int = 0
    inserted: int = 0
    warnings: list[str] = Field(default_factory=list)
    since: str | None = None
    reconnect_required: bool = False
    error_code: str | None = None


class Citation(BaseModel):
    number: int
    source_type: str
    title: str
    url: str | None = None
    provider_item_id: str | None = None
    thread_id: str | None = None
    owner_account_id: str | None = None
    score: float | None = None
    snippet: str = ""
    from_name: str | None = None
    date_iso: str | None = None


class AnswerResult(BaseModel):
    answer: str
    citations: list[Citation] = Field(default_factory=list)
    no_results_message: str | None = None
    degraded: bool = False
    error_code: str | None = None
    notice: str | None = None
