"""Markup stripping and whitespace normalization for provider content."""

from __future__ import annotations

import re

_TAG_RE = re.compile(r"<[^>]*>")
_NUMERIC_ENTITY_RE = re.compile(r"&#(\d+);")
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_WHITESPACE_RE = re.compile(r"\s+")

_NAMED_ENTITIES = (
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&apos;", "'"),
)


def _decode_numeric(match: re.Match[str]) -> str:
    try:
        return chr(int(match.group(1)))
    except (ValueError, OverflowError):
        return ""


def strip_html_tags(text: str | None) -> str:
    if not text or not isinstance(text, str):
        return ""
    cleaned = _TAG_RE.sub("", text)
    for entity, replacement in _NAMED_ENTITIES:
        cleaned = cleaned.replace(entity, replacement)
    return _NUMERIC_ENTITY_RE.sub(_decode_numeric, cleaned)


def normalize_newlines(text: str | None) -> str:
    if not text or not isinstance(text, str):
        return ""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    return _BLANK_RUN_RE.sub("\n\n", normalized)


def normalize_whitespace(text: str | None) -> str:
    if not text or not isinstance(text, str):
        return ""
    return _WHITESPACE_RE.sub(" ", text).strip()


def clean_text(
    text: str | None,
    *,
    strip_html: bool = True,
    unify_newlines: bool = True,
    collapse_whitespace: bool = True,
) -> str:
    if not text or not isinstance(text, str):
        return ""
    cleaned = text
    if strip_html:
        cleaned = strip_html_tags(cleaned)
    if unify_newlines:
        cleaned = normalize_newlines(cleaned)
    if collapse_whitespace:
        cleaned = normalize_whitespace(cleaned)
    return cleaned.strip()


def normalize_text(raw: str | None) -> str:
    return clean_text(raw)


def count_words(text: str | None) -> int:
    if not text or not isinstance(text, str):
        return 0
    return len(text.split())
